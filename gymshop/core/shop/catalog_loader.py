"""
Catalog seed loader.

Reads a YAML or JSON document of the form:

    products:
      - name: Resistance Band
        prices: {EGP: 450, SAR: 55}
        loyalty_points_awarded: 10
        variants:
          - {name: Light, stock: 20}
    programmes:
      - name: 12-Week Strength
        prices: {SAR: 199}
    plans:
      - name: Monthly
        prices: {SAR: 300}
        medical_prices: {SAR: 450}
        subscription_period_days: 30

Records carrying an ``id`` are upserted; others are inserted.

Environment variable:
    GYMSHOP_CATALOG_FILE: default path used by tools/seed_catalog.py
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

import yaml

from gymshop.core.errors import ValidationFailed
from gymshop.core.storage import Database

from .models import Product, Programme, SubscriptionPlan
from .tables import Tables

_log = logging.getLogger("gymshop.catalog")


def parse_catalog(raw_text: str) -> Dict[str, Any]:
    # Try JSON first (superset of YAML numbers/strings for simple documents)
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError:
        try:
            data = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ValidationFailed(f"Catalog file is neither JSON nor YAML: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed(f"Catalog must be a mapping, got {type(data).__name__}")
    return data


def load_catalog(db: Database, data: Dict[str, Any]) -> Dict[str, int]:
    t = Tables(db)
    counts = {"products": 0, "programmes": 0, "plans": 0}
    sections = (
        ("products", t.products, Product),
        ("programmes", t.programmes, Programme),
        ("plans", t.plans, SubscriptionPlan),
    )
    with db.transaction():
        for key, coll, model in sections:
            for entry in data.get(key) or []:
                if not isinstance(entry, dict):
                    _log.warning("Skipping non-mapping %s entry: %r", key, entry)
                    continue
                coll.put(model.model_validate(entry))
                counts[key] += 1
    _log.info("Loaded catalog products=%d programmes=%d plans=%d", counts["products"], counts["programmes"], counts["plans"])
    return counts


def load_catalog_file(db: Database, path: Path) -> Dict[str, int]:
    raw_text = Path(path).read_text(encoding="utf-8")
    return load_catalog(db, parse_catalog(raw_text))
