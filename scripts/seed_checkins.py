#!/usr/bin/env python3
"""
Seed Check-in Content — templates, encouragement lines and (optionally)
diagnosis inserts.

Every piece of copy passes a forbidden-phrase lint before it is written;
rejected items are reported and skipped. Re-running is safe: templates
upsert on key, encouragements on text, inserts on (code, day, branch).

Usage:
    python scripts/seed_checkins.py
    python scripts/seed_checkins.py --inserts content/inserts.yml

Inserts file format:
    inserts:
      - diagnosis_code: sciatica
        day: 3
        branch: same
        insert_text: "..."
"""
import argparse
import asyncio
import os
import re
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
import yaml

from checkins.content import DEFAULT_DISCLAIMER, default_subject, template_key
from database.store_base import BaseCheckinStore
from models.schemas import Branch, CHECKIN_DAYS, ChannelType, DiagnosisInsert, Template

logger = structlog.get_logger()

FORBIDDEN = [
    re.compile(r"diagnose", re.IGNORECASE),
    re.compile(r"prescrib", re.IGNORECASE),
    re.compile(r"dosage", re.IGNORECASE),
    re.compile(r"\stake\s", re.IGNORECASE),
    re.compile(r"should do", re.IGNORECASE),
]

SHELL_TEXT = "{{insert}}\n\n{{encouragement}}\n\nNext step options below."

ENCOURAGEMENTS = [
    "Small steps compound. Nice work showing up.",
    "Consistency beats intensity. You have got this.",
    "Two minutes is enough to keep momentum.",
    "Listen to your body and pace kindly.",
    "Progress is not linear. Your effort matters.",
    "Focus on form and comfort first.",
    "Short walk + gentle mobility works well.",
    "Breath + movement can ease tension.",
    "Yesterday does not define today.",
    "Keep going. You are building capacity.",
]


def is_safe(text: str) -> bool:
    return not any(rx.search(text) for rx in FORBIDDEN)


def build_templates() -> list[Template]:
    templates = []
    for day in CHECKIN_DAYS:
        for branch in Branch:
            templates.append(Template(
                key=template_key(day, branch),
                subject=(default_subject(day) if branch in (Branch.INITIAL, Branch.SAME)
                         else f"Day {day} update"),
                shell_text=SHELL_TEXT,
                disclaimer_text=DEFAULT_DISCLAIMER,
                channel=ChannelType.EMAIL,
            ))
    return templates


def load_inserts(path: str) -> list[DiagnosisInsert]:
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return [DiagnosisInsert(**row) for row in raw.get("inserts", [])]


async def seed(store: BaseCheckinStore, inserts: list[DiagnosisInsert] = None) -> dict[str, int]:
    """Write lint-clean content to the store. Returns counts per kind written."""
    counts = {"templates": 0, "encouragements": 0, "inserts": 0, "rejected": 0}

    for tpl in build_templates():
        if not (is_safe(tpl.shell_text) and is_safe(tpl.disclaimer_text) and is_safe(tpl.subject)):
            logger.warning("seed_rejected", kind="template", key=tpl.key)
            counts["rejected"] += 1
            continue
        await store.upsert_template(tpl)
        counts["templates"] += 1

    for text in ENCOURAGEMENTS:
        if not is_safe(text):
            logger.warning("seed_rejected", kind="encouragement", text=text)
            counts["rejected"] += 1
            continue
        await store.add_encouragement(text)
        counts["encouragements"] += 1

    for insert in inserts or []:
        if not is_safe(insert.insert_text):
            logger.warning("seed_rejected", kind="insert", diagnosis_code=insert.diagnosis_code,
                           day=insert.day, branch=insert.branch.value)
            counts["rejected"] += 1
            continue
        await store.upsert_diagnosis_insert(insert)
        counts["inserts"] += 1

    logger.info("seed_complete", **counts)
    return counts


async def run(inserts_path: str = None) -> dict[str, int]:
    from config.settings import load_settings
    from database.store_factory import create_store
    settings = load_settings()

    if settings.database.store_backend == "sql":
        from database.session import init_db
        await init_db(settings.database.url)

    store = create_store({"store_backend": settings.database.store_backend})
    inserts = load_inserts(inserts_path) if inserts_path else []
    try:
        return await seed(store, inserts)
    finally:
        if settings.database.store_backend == "sql":
            from database.session import close_db
            await close_db()


def main():
    parser = argparse.ArgumentParser(description="Seed check-in content")
    parser.add_argument("--inserts", help="YAML file with diagnosis inserts")
    args = parser.parse_args()

    counts = asyncio.run(run(args.inserts))
    print(f"OK: templates={counts['templates']} encouragements={counts['encouragements']} "
          f"inserts={counts['inserts']} rejected={counts['rejected']}")


if __name__ == "__main__":
    main()
