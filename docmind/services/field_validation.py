"""Per-field validation for the pipeline's VALIDATION stage.

Validation never blocks processing: results are attached to the document metadata.
Errors mark a field invalid; warnings (low confidence, missing coordinates, loose
phone/ZIP shapes) are advisory.
"""
from dataclasses import dataclass, field
import re

from docmind.services.field_types import FieldType

LOW_CONFIDENCE_THRESHOLD = 0.5

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
SSN_RE = re.compile(r"^\d{3}-?\d{2}-?\d{4}$")
ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")


@dataclass
class FieldValidation:
    field_name: str
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "field_name": self.field_name,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def validate_field(name: str, field_type: str, value: str | None, confidence: float, coordinates: dict | None) -> FieldValidation:
    out = FieldValidation(field_name=name)
    v = (value or "").strip()
    ftype = field_type.value if isinstance(field_type, FieldType) else str(field_type)

    if v:
        if ftype == FieldType.EMAIL.value and not EMAIL_RE.match(v):
            out.errors.append("Invalid email format")
        elif ftype == FieldType.PHONE.value:
            if not PHONE_RE.match(v) or sum(c.isdigit() for c in v) < 10:
                out.warnings.append("Phone number may be invalid")
        elif ftype == FieldType.SSN.value and not SSN_RE.match(v):
            out.errors.append("Invalid SSN format")
        elif ftype == FieldType.ZIP.value and not ZIP_RE.match(v):
            out.warnings.append("ZIP code may be invalid")

    if confidence < LOW_CONFIDENCE_THRESHOLD:
        out.warnings.append("Low confidence detection")
    if not coordinates:
        out.warnings.append("No position coordinates")

    out.is_valid = not out.errors
    return out


def validate_fields(fields) -> dict:
    """Validate DetectedFieldData-like objects. Returns the summary stored under metadata['validation']."""
    results = [
        validate_field(f.name, f.field_type, f.value, f.confidence, f.coordinates)
        for f in fields
    ]
    return {
        "total": len(results),
        "valid": sum(1 for r in results if r.is_valid),
        "invalid": sum(1 for r in results if not r.is_valid),
        "warnings": sum(len(r.warnings) for r in results),
        "fields": [r.as_dict() for r in results if r.errors or r.warnings],
    }
