"""Copy and download helpers for Evidence Packs and support bundles.

Copying shells out to the first available clipboard tool. When none works the
caller gets the pretty-printed JSON back to show for manual copy; a clipboard
failure is never an error.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .crypto import _now_utc

logger = logging.getLogger("proof_gate.export")

CLIPBOARD_COMMANDS: Sequence[Sequence[str]] = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
)

Copier = Callable[[str], bool]


@dataclass
class CopyResult:
    copied: bool
    fallback_text: Optional[str] = None


def to_pretty_json(obj: Any) -> str:
    data = obj.to_dict() if hasattr(obj, "to_dict") else obj
    return json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False)


def system_clipboard_copy(text: str) -> bool:
    for cmd in CLIPBOARD_COMMANDS:
        if shutil.which(cmd[0]) is None:
            continue
        try:
            subprocess.run(list(cmd), input=text.encode("utf-8"), check=True, timeout=5)
            return True
        except (OSError, subprocess.SubprocessError) as e:
            logger.info("clipboard via %s failed: %s", cmd[0], e)
    return False


def copy_json(obj: Any, copier: Optional[Copier] = None) -> CopyResult:
    text = to_pretty_json(obj)
    copier = copier or system_clipboard_copy
    try:
        ok = bool(copier(text))
    except Exception as e:
        logger.info("clipboard copy raised: %s", e)
        ok = False
    return CopyResult(copied=True) if ok else CopyResult(copied=False, fallback_text=text)


def download_json(obj: Any, directory: str, prefix: str = "evidence-pack", now: Optional[datetime] = None) -> Path:
    """Write `<prefix>-<YYYYMMDDTHHMMSSZ>.json` into directory and return its path."""
    stamp = (now or _now_utc()).strftime("%Y%m%dT%H%M%SZ")
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"{prefix}-{stamp}.json"
    path.write_text(to_pretty_json(obj) + "\n", encoding="utf-8")
    return path
