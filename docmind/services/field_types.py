"""Field type inference for detected form fields.

Two scoring passes over the field name/label:
- exact patterns: the whole (normalised) name matches a known field name, weight * 0.95
- contextual keywords: keyword hits in "name label", weight * (hits / keywords) * 0.8
The best score wins; it is then nudged by a few heuristics (descriptive name, distinct
label, generic name penalty). Scores <= 0.5 fall back to TEXT. Confidence is clamped
to [0.3, 1.0].
"""
from enum import Enum
import re


class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    SSN = "ssn"
    ZIP = "zip"
    NUMBER = "number"
    CURRENCY = "currency"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    SIGNATURE = "signature"
    ADDRESS = "address"
    SELECT = "select"
    TEXTAREA = "textarea"


_SEP = r"[_\s-]?"

FIELD_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(rf"^(email|e{_SEP}mail|email{_SEP}address|contact{_SEP}email)$", re.I),
    "phone": re.compile(
        rf"^(phone|telephone|tel|mobile|cell|contact{_SEP}number|phone{_SEP}number)$", re.I
    ),
    "ssn": re.compile(
        rf"^(ssn|social{_SEP}security|social{_SEP}security{_SEP}number|tin)$", re.I
    ),
    "signature": re.compile(
        rf"^(signature|sign|signed{_SEP}by|applicant{_SEP}signature)$", re.I
    ),
    "date_of_birth": re.compile(
        rf"^(date{_SEP}of{_SEP}birth|dob|birth{_SEP}date|birthday)$", re.I
    ),
    "zip_code": re.compile(rf"^(zip|postal{_SEP}code|postcode|zip{_SEP}code)$", re.I),
    "street_address": re.compile(
        rf"^(street|address|street{_SEP}address|address{_SEP}1|line{_SEP}1)$", re.I
    ),
    "checkbox": re.compile(rf"^(check|checkbox|option|select|choice|yes{_SEP}no)$", re.I),
}

# (pattern key, type, weight)
_EXACT_SCORES: list[tuple[str, FieldType, float]] = [
    ("email", FieldType.EMAIL, 1.0),
    ("phone", FieldType.PHONE, 1.0),
    ("ssn", FieldType.SSN, 0.95),
    ("signature", FieldType.SIGNATURE, 1.0),
    ("date_of_birth", FieldType.DATE, 0.9),
    ("zip_code", FieldType.ZIP, 0.9),
    ("street_address", FieldType.ADDRESS, 0.9),
    ("checkbox", FieldType.CHECKBOX, 0.85),
]

# (keywords, type, weight)
_CONTEXTUAL_SCORES: list[tuple[tuple[str, ...], FieldType, float]] = [
    (("email", "e-mail", "@"), FieldType.EMAIL, 0.9),
    (("phone", "telephone", "mobile", "cell"), FieldType.PHONE, 0.9),
    (("social", "ssn", "security"), FieldType.SSN, 0.85),
    (("date", "birth", "dob", "birthday"), FieldType.DATE, 0.8),
    (("zip", "postal", "postcode"), FieldType.ZIP, 0.85),
    (("address", "street", "location"), FieldType.ADDRESS, 0.8),
    (("amount", "price", "salary", "income", "$", "dollar"), FieldType.CURRENCY, 0.8),
    (("number", "count", "quantity", "#"), FieldType.NUMBER, 0.7),
    (("sign", "signature", "signed"), FieldType.SIGNATURE, 0.9),
    (("check", "checkbox", "tick"), FieldType.CHECKBOX, 0.75),
]

_GENERIC_NAMES = ("field", "input", "text", "data", "value", "item")

MIN_CONFIDENCE = 0.3

_EMAIL_VALUE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_VALUE = re.compile(r"^\+?[\d\s\-().]{10,}$")
_SSN_VALUE = re.compile(r"^\d{3}-\d{2}-\d{4}$")
_ZIP_VALUE = re.compile(r"^\d{5}(-\d{4})?$")
_DATE_VALUE = re.compile(r"^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}$")


def sanitize_field_name(name: str) -> str:
    """Lowercase, non-alphanumerics to '_', collapse repeats, strip leading/trailing '_'."""
    s = re.sub(r"[^a-z0-9]", "_", (name or "").lower())
    s = re.sub(r"_+", "_", s)
    return s.strip("_")


def detect_field_type(field_name: str, field_label: str = "", context: str = "") -> tuple[FieldType, float]:
    """Infer (FieldType, confidence) from a field's name and label."""
    combined = f"{field_name} {field_label} {context}".lower()
    best_score = 0.0
    best_type = FieldType.TEXT

    for key, ftype, weight in _EXACT_SCORES:
        if FIELD_PATTERNS[key].match(field_name or ""):
            score = weight * 0.95
            if score > best_score:
                best_score, best_type = score, ftype

    for keywords, ftype, weight in _CONTEXTUAL_SCORES:
        hits = sum(1 for kw in keywords if kw in combined)
        if hits:
            score = weight * (hits / len(keywords)) * 0.8
            if score > best_score:
                best_score, best_type = score, ftype

    if best_score > 0:
        if len(field_name or "") > 3:
            best_score = min(1.0, best_score + 0.05)
        if field_name and field_label and field_name != field_label:
            best_score = min(1.0, best_score + 0.1)
        if any(g in (field_name or "").lower() for g in _GENERIC_NAMES):
            best_score *= 0.7

    ftype = best_type if best_score > 0.5 else FieldType.TEXT
    return ftype, max(MIN_CONFIDENCE, min(1.0, best_score))


def infer_type_from_value(value: str | None) -> FieldType | None:
    """Shape-based fallback for fields whose name says nothing (e.g. 'Text1')."""
    v = (value or "").strip()
    if not v:
        return None
    if _EMAIL_VALUE.match(v):
        return FieldType.EMAIL
    if _SSN_VALUE.match(v):
        return FieldType.SSN
    if _ZIP_VALUE.match(v):
        return FieldType.ZIP
    if _DATE_VALUE.match(v):
        return FieldType.DATE
    if _PHONE_VALUE.match(v) and sum(c.isdigit() for c in v) >= 10:
        return FieldType.PHONE
    return None


def infer_field_type(field_name: str, field_label: str = "", value: str | None = None) -> tuple[FieldType, float]:
    """detect_field_type, then fall back to the value's shape when the name is uninformative."""
    ftype, confidence = detect_field_type(field_name, field_label)
    if ftype == FieldType.TEXT:
        by_value = infer_type_from_value(value)
        if by_value is not None:
            return by_value, max(confidence, 0.6)
    return ftype, confidence


def clamp_confidence(value) -> float:
    """Coerce any external confidence into [0, 1]; non-numeric becomes 0."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(1.0, v))
