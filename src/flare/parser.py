# parser.py
from __future__ import annotations

import io
import logging
from typing import Optional, TextIO, Union

from .defaults import DefaultsConfig, enforce_defaults
from .dsl import split_directive
from .errors import ScriptSyntaxError
from .model import Script, new_command

logger = logging.getLogger(__name__)


def parse(source: Union[str, TextIO], defaults: Optional[DefaultsConfig] = None) -> Script:
    """
    Parse script text (or a text stream) into a Script with defaults applied.

    Blank lines and `#` comments are skipped but still counted, so errors
    point at the real 1-based line. Parsing stops at the first bad line.
    """
    reader = io.StringIO(source) if isinstance(source, str) else source
    logger.debug("Parsing script")

    script = Script()
    for line, text in enumerate(reader, start=1):
        text = text.strip()
        if not text or text.startswith("#"):
            continue
        logger.debug("Parsing [%d: %s]", line, text)

        name, raw_args = split_directive(text)
        cmd = new_command(name, line, raw_args)
        script.add(cmd)
        logger.debug("%s parsed OK", name)

    logger.debug("Done parsing")
    return enforce_defaults(script, defaults)


def parse_file(path, defaults: Optional[DefaultsConfig] = None) -> Script:
    """Read a UTF-8 script file and parse it; bad bytes are reported by line."""
    with open(path, "rb") as f:
        data = f.read()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        line = data.count(b"\n", 0, e.start) + 1
        raise ScriptSyntaxError(
            f"invalid UTF-8 byte {data[e.start:e.start + 1]!r}", line=line, details={"file": str(path)}
        ) from e
    return parse(text, defaults)
