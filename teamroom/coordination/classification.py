"""
Parsing and storage mapping for task classifications.
"""
from typing import Any, Optional, Union

from teamroom.db.models import CLASSIFICATION_KINDS, Classification, FollowUp, NewFeature, Question
from teamroom.errors import InvalidClassification

_FEATURE_FIELDS = ("title", "description", "tech_specs")


def _text(metadata: dict, key: str) -> Optional[str]:
    value = metadata.get(key)
    if value is None and key == "tech_specs":
        value = metadata.get("techSpecs")
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_classification(
    kind: Union[str, Classification],
    metadata: Optional[dict[str, Any]] = None,
) -> Classification:
    """Build a Classification from a kind name plus optional metadata.

    new_feature requires a non-empty title, description and tech_specs.
    """
    if isinstance(kind, (Question, FollowUp, NewFeature)):
        if isinstance(kind, NewFeature):
            return parse_classification(
                "new_feature",
                {"title": kind.title, "description": kind.description, "tech_specs": kind.tech_specs},
            )
        return kind
    if kind not in CLASSIFICATION_KINDS:
        raise InvalidClassification(
            f"Unknown classification '{kind}'. Must be one of {CLASSIFICATION_KINDS}",
            classification=kind,
        )
    if kind == "question":
        return Question()
    if kind == "follow_up":
        return FollowUp()

    metadata = metadata or {}
    values = {key: _text(metadata, key) for key in _FEATURE_FIELDS}
    missing = [key for key, value in values.items() if value is None]
    if missing:
        raise InvalidClassification(
            "new_feature requires title, description and tech_specs",
            classification=kind,
            missing=missing,
        )
    return NewFeature(**values)


def classification_columns(classification: Optional[Classification]) -> tuple:
    """(kind, title, description, tech_specs) for the tasks table."""
    if classification is None:
        return (None, None, None, None)
    if isinstance(classification, NewFeature):
        return ("new_feature", classification.title, classification.description, classification.tech_specs)
    return (classification.kind, None, None, None)


def classification_from_row(kind: Optional[str], title: Optional[str],
                            description: Optional[str], tech_specs: Optional[str]) -> Optional[Classification]:
    if not kind:
        return None
    if kind == "new_feature":
        return NewFeature(title=title or "", description=description or "", tech_specs=tech_specs or "")
    if kind == "follow_up":
        return FollowUp()
    return Question()


def classification_to_dict(classification: Optional[Classification]) -> Optional[dict]:
    if classification is None:
        return None
    if isinstance(classification, NewFeature):
        return {"kind": "new_feature", "title": classification.title,
                "description": classification.description, "tech_specs": classification.tech_specs}
    return {"kind": classification.kind}
