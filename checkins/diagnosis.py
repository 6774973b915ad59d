"""
Diagnosis mapping — the only place that interprets the classifier's label.

The questionnaire classifier stores an opaque `guide_type` label on the
subject. Check-in copy is keyed by diagnosis code, so the label is mapped
through an explicit table. Anything not in the table resolves to None and
the item fails; there is no generic diagnosis.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

logger = structlog.get_logger()

URGENT_GUIDE_TYPE = "urgent_symptoms"

DIAGNOSIS_MAP: dict[str, str] = {
    "facet_arthropathy": "facet_arthropathy",
    "lumbar_instability": "lumbar_instability",
    "muscular_nslbp": "nonspecific_lbp",
    "sciatica": "sciatica",
    "upper_lumbar_radiculopathy": "upper_lumbar_radiculopathy",
    "si_joint_dysfunction": "si_joint_dysfunction",
    "canal_stenosis": "canal_stenosis",
    "central_disc_bulge": "central_disc_bulge",
}


def _guide_type(record: Any) -> Optional[str]:
    if record is None:
        return None
    if isinstance(record, dict):
        return record.get("guide_type")
    return getattr(record, "guide_type", None)


def normalize_label(label: Optional[str]) -> str:
    return (label or "").strip().lower()


def resolve_diagnosis_code(record: Any) -> Optional[str]:
    """Map a subject (model or dict with `guide_type`) to a diagnosis code, or None."""
    label = normalize_label(_guide_type(record))
    if not label:
        logger.debug("diagnosis_unmapped", reason="no_guide_type")
        return None
    code = DIAGNOSIS_MAP.get(label)
    if code is None:
        logger.info("diagnosis_unmapped", guide_type=label)
    return code


def is_urgent(record: Any) -> bool:
    return normalize_label(_guide_type(record)) == URGENT_GUIDE_TYPE
