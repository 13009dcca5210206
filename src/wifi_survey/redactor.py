"""Logging filter that keeps store credentials out of log output.

Two kinds of text are scrubbed before a record is emitted:

* values collected from the resolved config whose *keys* match
  ``logging.redact_patterns`` (shell-style globs, e.g. ``*key*``);
* ``key=...`` query parameters, since the Firestore API key is sent in
  the request URL and ``requests``/``urllib3`` log URLs at debug level.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Any, Iterable

REDACTED = "[REDACTED]"

_QUERY_KEY_RE = re.compile(r"([?&]key=)[^&\s'\"]+")


class SecretRedactingFilter(logging.Filter):
    """Replace known secrets in a record's message and args."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        for value in secret_values or ():
            self.add_secret(value)

    def add_secret(self, value: str) -> None:
        # single characters would redact half the log
        if value and len(value) > 1:
            self._secrets.add(value)

    def redact(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        # longest first so a secret containing another is replaced whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            value = value.replace(secret, REDACTED)
        return _QUERY_KEY_RE.sub(r"\1" + REDACTED, value)

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self.redact(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.redact(a) for a in record.args)
        return True


def collect_secret_values(config: Any, patterns: list[str] | None = None) -> list[str]:
    """Return string values in *config* whose keys match any of *patterns*.

    Matching is case-insensitive and recurses into nested dicts and lists.
    """
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _visit(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                else:
                    _visit(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _visit(item)

    _visit(config)
    return found
