"""Fixed category set bootstrapped into a fresh database.

Categories are administrative: the reconciler never creates them, so every
proposal must target one of these (or one added here later).
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models

logger = logging.getLogger(__name__)

CATEGORIES: list[dict] = [
    {"id": "reason_for_encounter", "label": "Reason for Encounter",
     "description": "Why the patient was seen or why the document was produced"},
    {"id": "communication", "label": "Communication",
     "description": "Messages between patient, clinic and third parties"},
    {"id": "appointments", "label": "Appointments",
     "description": "Scheduling, cancellations, no-shows and follow-ups"},
    {"id": "results", "label": "Results", "description": "Lab, imaging and other test results"},
    {"id": "referral", "label": "Referral", "description": "Referrals in and out, specialty and urgency"},
    {"id": "mental_health", "label": "Mental Health",
     "description": "Mood, anxiety, screening instruments and behavioural concerns"},
    {"id": "respiratory", "label": "Respiratory", "description": "Respiratory findings, conditions and measures"},
    {"id": "vitals", "label": "Vitals", "description": "Blood pressure, heart rate, temperature, weight"},
    {"id": "smoking", "label": "Smoking", "description": "Tobacco and vaping status and cessation"},
    {"id": "sexual_health", "label": "Sexual Health",
     "description": "Contraception, screening and sexual health concerns"},
]


async def seed_categories(session: AsyncSession, categories: list[dict] | None = None) -> list[str]:
    """Insert missing categories; existing ones are left untouched.

    Returns:
        Ids of the categories inserted
    """
    categories = CATEGORIES if categories is None else categories
    existing = set((await session.execute(select(models.Category.id))).scalars().all())

    inserted = []
    for entry in categories:
        if entry["id"] in existing:
            continue
        session.add(models.Category(
            id=entry["id"],
            label=entry["label"],
            description=entry.get("description"),
        ))
        inserted.append(entry["id"])

    await session.flush()
    if inserted:
        logger.info(f"Seeded {len(inserted)} categories: {', '.join(inserted)}")
    return inserted
