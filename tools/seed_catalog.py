"""Load products, programmes and subscription plans from a YAML/JSON file."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# ---- sys.path bootstrap ----
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
# ----------------------------

from gymshop.core.config import data_root, env_str  # noqa: E402
from gymshop.core.errors import ShopError  # noqa: E402
from gymshop.core.shop.catalog_loader import load_catalog_file  # noqa: E402
from gymshop.core.storage import open_database  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("path", nargs="?", default=None, help="Catalog file (.yaml, .yml or .json); defaults to GYMSHOP_CATALOG_FILE")
    ap.add_argument("--data-root", default=None, help="Override GYMSHOP_DATA_ROOT")
    args = ap.parse_args(argv)

    path = args.path or env_str("GYMSHOP_CATALOG_FILE")
    if not path:
        print("ERROR: no catalog file given and GYMSHOP_CATALOG_FILE is unset", file=sys.stderr)
        return 2

    logging.basicConfig(level=logging.INFO)
    root = Path(args.data_root) if args.data_root else data_root()
    try:
        counts = load_catalog_file(open_database(root), Path(path))
    except (OSError, ShopError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print(json.dumps({"data_root": str(root), "loaded": counts}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
