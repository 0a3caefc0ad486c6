"""Type aliases used across pipecheck."""

from __future__ import annotations

from typing import Any

JsonDict = dict[str, Any]
