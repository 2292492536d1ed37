"""Root conftest: pins the environment before ``chat_sync.config`` is imported.

``Settings`` is instantiated at import time, so values from a developer's
``.env`` or shell must not leak into the tests.
"""
from __future__ import annotations

import os
from pathlib import Path

_env_test = Path(__file__).resolve().parent / ".env.test"


def _load_env_test(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


for _key, _value in _load_env_test(_env_test).items():
    os.environ[_key] = _value
