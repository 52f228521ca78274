"""Allow ``python -m xpmctl`` (used by detached deployment workers)."""
from __future__ import annotations

from .cli import main

main()
