"""
Workflow icon keys and keyword-based inference.

A template created without an explicit ``icon_key`` gets one guessed from
its name and description. The first matching rule wins; rules are ordered
from most to least specific.
"""

import re

WORKFLOW_ICON_KEYS = frozenset({
    "document", "clipboard", "checklist", "folder", "inbox", "envelope", "tag",
    "chat", "information", "question",
    "stethoscope", "heart", "shield", "shieldCheck", "warning", "lock",
    "beaker", "pill",
    "arrowDownTray", "paperAirplane", "arrowRight",
    "cog", "wrench", "user", "users",
    "briefcase", "creditCard", "buildingOffice",
})

DEFAULT_ICON_KEY = "document"

# (icon, keywords). Short keywords such as "dv" are left out; they collide
# with unrelated words ("advice").
_ICON_RULES = (
    ("shieldCheck", ("firearm", "firearms", "licensing", "license")),
    ("shield", ("safeguard", "child protection", "adult protection", "domestic violence")),
    ("lock", ("confidential", "security", "secure")),
    ("warning", ("urgent", "red flag", "high risk", "warning", "triage")),
    ("beaker", ("blood test", "pathology", "lab", "results", "result")),
    ("arrowDownTray", ("discharge", "d c summary", "dc summary", "summary")),
    ("chat", ("advice and guidance", "a and g", "guidance", "advice")),
    ("envelope", ("clinic letter", "clinic letters", "letter", "correspondence")),
    ("clipboard", ("gp review", "clinician review", "doctor review", "review")),
    ("paperAirplane", ("referral", "refer", "send", "forward")),
    ("pill", ("prescription", "repeat", "medication", "meds", "medicine")),
    ("briefcase", ("private", "insurance", "medico legal", "medicolegal")),
)


def _normalise(text: str | None) -> str:
    text = (text or "").lower().replace("&", " and ")
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def infer_icon_key(name: str, description: str | None = None) -> str:
    """Guess an icon key from a template's name and description."""
    text = f"{_normalise(name)} {_normalise(description)}".strip()
    for icon, keywords in _ICON_RULES:
        if any(k in text for k in keywords):
            return icon
    return DEFAULT_ICON_KEY


def is_valid_icon_key(icon_key: str | None) -> bool:
    return icon_key is None or icon_key in WORKFLOW_ICON_KEYS
