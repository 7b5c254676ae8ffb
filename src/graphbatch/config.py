"""Environment-driven client settings.

Recognised variables:

* ``GRAPHBATCH_TOKEN`` (falls back to ``GITHUB_TOKEN``, then to the first
  line of a ``.github-token`` file in the working directory)
* ``GRAPHBATCH_BASE_URL``
* ``GRAPHBATCH_USER_AGENT``
* ``GRAPHBATCH_MAX_BATCH_SIZE``
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from graphbatch.transport import DEFAULT_BASE_URL

if TYPE_CHECKING:
    from collections.abc import Mapping

TOKEN_FILE = ".github-token"


def read_token(
    environ: Mapping[str, str] | None = None, token_file: str | Path = TOKEN_FILE
) -> str:
    """Find an API token in the environment or in *token_file*.

    Raises :class:`RuntimeError` when none is available.
    """
    environ = os.environ if environ is None else environ
    token = environ.get("GRAPHBATCH_TOKEN") or environ.get("GITHUB_TOKEN")
    if token:
        return token
    try:
        token = Path(token_file).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        token = ""
    if not token:
        raise RuntimeError(
            "Could not find a token in GRAPHBATCH_TOKEN, GITHUB_TOKEN "
            f"or the file {token_file}"
        )
    return token


@dataclass(frozen=True)
class ClientSettings:
    """Settings a :class:`~graphbatch.client.Client` can be built from."""

    token: str
    base_url: str = DEFAULT_BASE_URL
    user_agent: str | None = None
    max_batch_size: int | None = None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        token_file: str | Path = TOKEN_FILE,
    ) -> ClientSettings:
        environ = os.environ if environ is None else environ
        max_batch_size = environ.get("GRAPHBATCH_MAX_BATCH_SIZE")
        return cls(
            token=read_token(environ, token_file),
            base_url=environ.get("GRAPHBATCH_BASE_URL") or DEFAULT_BASE_URL,
            user_agent=environ.get("GRAPHBATCH_USER_AGENT") or None,
            max_batch_size=int(max_batch_size) if max_batch_size else None,
        )
