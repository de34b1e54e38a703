"""
Repair job: rebuild vote stats and importance scores from the vote ledger.

Recomputation is idempotent, so this is safe to run on a schedule. It also
refreshes time decay for incidents nobody has voted on recently.

Usage:
  python -m scripts.recompute_scores --municipality lisboa
  python -m scripts.recompute_scores --incident <incident_id>
"""

import argparse
import logging
import sys

from app.core.exceptions import RankingEngineError
from app.services.incident_service import get_incident_service

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--municipality", help="Recompute every incident of this municipality")
    target.add_argument("--incident", help="Recompute a single incident")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    service = get_incident_service()

    try:
        if args.incident:
            incident = service.recompute_incident(args.incident)
            print(f"{incident.id}: total={incident.vote_stats.total} score={incident.importance_score:.4f}")
        else:
            count = service.recompute_municipality(args.municipality)
            print(f"Recomputed {count} incidents for {args.municipality}")
    except RankingEngineError as e:
        logger.error(f"Recompute failed: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
