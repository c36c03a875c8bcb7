from .dsl import make_named_param, map_args, split_arguments, split_directive, split_named_param
from .defaults import DefaultsConfig, enforce_defaults
from .errors import FlareError
from .model import Script
from .parser import parse, parse_file
from .runner import Executor, RunResult, execute

__all__ = [
    "split_directive", "split_arguments", "split_named_param", "map_args", "make_named_param",
    "DefaultsConfig", "enforce_defaults", "FlareError", "Script",
    "parse", "parse_file", "Executor", "RunResult", "execute",
]
