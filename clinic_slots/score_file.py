from __future__ import annotations

import json
import logging
import os
import tempfile

from clinic_slots.scorer import SlotScorer

logger = logging.getLogger(__name__)


def load_scores(path: str, scorer: SlotScorer) -> int:
    if not os.path.exists(path):
        return 0

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError):
        # A corrupted snapshot shouldn't stop the service; start with default scores.
        logger.warning(f"Score snapshot {path} is not valid JSON, starting empty")
        return 0

    if not isinstance(raw, dict) or not isinstance(raw.get("scores", []), list):
        logger.warning(f"Score snapshot {path} has an unexpected layout, starting empty")
        return 0

    loaded = scorer.restore(raw.get("scores", []))
    logger.info(f"Restored {loaded} score states from {path}")
    return loaded


def save_scores(path: str, scorer: SlotScorer) -> None:
    data = {"scores": scorer.snapshot()}

    folder = os.path.dirname(os.path.abspath(path))
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)

    # Atomic write
    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name

    os.replace(tmp_name, path)
    logger.info(f"Saved {len(data['scores'])} score states to {path}")
