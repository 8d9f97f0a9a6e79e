"""Adapters for the remote routine catalog and generation service."""

from routinebot.service.catalog import HttpRoutineCatalog, RoutineCatalog, parse_routines
from routinebot.service.generation import GenerationClient, extract_content
from routinebot.service.http_client import ServiceHttpClient

__all__ = [
    "ServiceHttpClient",
    "RoutineCatalog",
    "HttpRoutineCatalog",
    "parse_routines",
    "GenerationClient",
    "extract_content",
]
