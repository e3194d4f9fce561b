from __future__ import annotations

import logging

from companion_memory.core.security import redact_secrets


class RedactionFilter(logging.Filter):
    """Log filter that redacts sensitive data before output."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(_redact_arg(arg) for arg in record.args)
        return True


def _redact_arg(arg: object) -> object:
    # Numbers keep their type so %d and %f placeholders still format.
    if isinstance(arg, (int, float)):
        return arg
    return redact_secrets(str(arg))


def setup_logging(level: str, verbose: bool = False) -> None:
    """Configure application logging with secret redaction.

    ``verbose`` lowers the package logger to DEBUG so retrieval statistics
    are emitted without touching third-party log levels.
    """

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    root = logging.getLogger()
    # Logger filters skip propagated records, so handlers get one too.
    for target in (root, *root.handlers):
        if not any(isinstance(item, RedactionFilter) for item in target.filters):
            target.addFilter(RedactionFilter())
    if verbose:
        logging.getLogger("companion_memory").setLevel(logging.DEBUG)
