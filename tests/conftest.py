from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    # the CLI binds the logger to CliRunner's streams, which are closed after invoke
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
