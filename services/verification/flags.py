# services/verification/flags.py
from __future__ import annotations

from typing import Any, Optional

# Backend code -> UI flag. Anything else non-empty collapses to "normal".
_CODE_TO_UI = {
    "H": "high",
    "L": "low",
    "C": "critical",
}
_UI_TO_CODE = {v: k for k, v in _CODE_TO_UI.items()}


def to_ui_flag(code: Any) -> Optional[str]:
    """
    Decode a compact backend flag ("H", "L", "C") into the UI vocabulary.

    None / "" -> None. Codes match exactly ("h" is not "H"); anything else
    becomes "normal", and re-encoding that yields None.
    """
    if code is None or code == "":
        return None
    return _CODE_TO_UI.get(str(code), "normal")


def to_backend_flag(ui_flag: Any) -> Optional[str]:
    """Encode a UI flag back to its backend code. "normal" and None both map to None."""
    if ui_flag is None:
        return None
    return _UI_TO_CODE.get(str(ui_flag).strip().lower())
