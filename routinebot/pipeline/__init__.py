"""Execution pipeline: prompt building, generation, directive parsing and application."""

from routinebot.pipeline.directives import Directive, DirectiveType, parse_directive
from routinebot.pipeline.executor import DirectiveExecutor
from routinebot.pipeline.pipeline import ExecutionPipeline, GenerationPipeline
from routinebot.pipeline.prompt import build_prompt, describe_directory

__all__ = [
    "ExecutionPipeline",
    "GenerationPipeline",
    "Directive",
    "DirectiveType",
    "parse_directive",
    "DirectiveExecutor",
    "build_prompt",
    "describe_directory",
]
