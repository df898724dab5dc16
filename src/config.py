"""
Runtime settings.

Values come from environment variables, falling back to defaults:
- RECON_DB_PATH: SQLite database file
- RECON_UPLOAD_DIR: where uploaded files are kept
- RECON_BATCH_SIZE: rows per persistence batch
- RECON_WORKERS: ingestion worker threads
- RECON_RULES_PATH: YAML file with matching rules
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from src.engine.rules import MatchingRules, load_rules
from src.pipeline.ingestion import BATCH_SIZE


@dataclass
class Settings:
    """Settings shared by the CLI and the services."""
    db_path: Path = Path("data/reconciliation.db")
    upload_dir: Path = Path("data/uploads")
    batch_size: int = BATCH_SIZE
    workers: int = 2
    rules_path: Optional[Path] = None

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("RECON_BATCH_SIZE must be at least 1")
        if self.workers < 1:
            raise ValueError("RECON_WORKERS must be at least 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        rules_path = env.get("RECON_RULES_PATH")
        return cls(
            db_path=Path(env.get("RECON_DB_PATH", str(cls.db_path))),
            upload_dir=Path(env.get("RECON_UPLOAD_DIR", str(cls.upload_dir))),
            batch_size=int(env.get("RECON_BATCH_SIZE", BATCH_SIZE)),
            workers=int(env.get("RECON_WORKERS", 2)),
            rules_path=Path(rules_path) if rules_path else None,
        )

    def load_rules(self) -> MatchingRules:
        return load_rules(self.rules_path)
