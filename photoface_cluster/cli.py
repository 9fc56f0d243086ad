"""
Command-line entry point for the photoface service.

This module parses command line arguments, constructs an :class:`AppConfig`
object and dispatches to the selected sub-command.  Every command works on
the SQLite database given with ``--db``; commands that change photos end
with an immediate re-cluster instead of waiting for the debounce timer.
"""

from __future__ import annotations

import logging
import sys
from typing import List, Optional

from . import db
from .config import AppConfig, parse_args
from .faces_io import read_faces_parquet, write_faces_parquet
from .images import scan_photos
from .orchestrator import ReclusterOrchestrator

LOGGER = logging.getLogger("photoface.cli")


def _print_people(orchestrator: ReclusterOrchestrator) -> None:
    people = orchestrator.get_people_with_thumbnails()
    if not people:
        print("No people found.")
        return
    for person in people:
        print(f"{person['id']}\t{person['name']}\t{person['photo_count']} photos")


def run_command(config: AppConfig, orchestrator: ReclusterOrchestrator) -> int:
    """Execute ``config.command`` and return a process exit code."""
    command = config.command
    extra = config.extra
    if command == "scan":
        photos = list(scan_photos(extra["input_dir"]))
        LOGGER.info("Found %d photos under %s", len(photos), extra["input_dir"])
        orchestrator.process_photos(photos)
        orchestrator.trigger_recluster()
        _print_people(orchestrator)
    elif command == "import-faces":
        photos = read_faces_parquet(extra["faces_path"])
        orchestrator.add_photos(photos)
        orchestrator.trigger_recluster()
        _print_people(orchestrator)
    elif command == "export-faces":
        with orchestrator.engine.connect() as conn:
            photos = db.get_all_photos_with_faces(conn)
        count = write_faces_parquet(extra["faces_path"], photos)
        print(f"Wrote {count} faces to {extra['faces_path']}")
    elif command == "recluster":
        if not orchestrator.trigger_recluster():
            print("Re-clustering did not complete; see log.", file=sys.stderr)
            return 1
        _print_people(orchestrator)
    elif command == "people":
        _print_people(orchestrator)
    elif command == "name":
        if not orchestrator.assign_person_name(extra["person_id"], extra["name"]):
            print(f"Unknown person: {extra['person_id']}", file=sys.stderr)
            return 1
    elif command == "delete-photo":
        if not orchestrator.delete_photo(extra["photo_id"]):
            print(f"Unknown photo: {extra['photo_id']}", file=sys.stderr)
            return 1
        orchestrator.trigger_recluster()
    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        return 2
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point called by the ``photoface`` script."""
    cfg = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if cfg.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    engine = db.init_db(cfg.db_path)
    detector = None
    if cfg.command == "scan":
        from .detectors import get_detector
        detector = get_detector(model_name=cfg.model_name, min_face_size=cfg.min_face_size)
    orchestrator = ReclusterOrchestrator(engine, detector=detector, config=cfg)
    try:
        return run_command(cfg, orchestrator)
    finally:
        orchestrator.close()
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
