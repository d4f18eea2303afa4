"""
Report persistence.

The pipeline hands the finalized report to a ReportStore; storage
layout is the store's concern.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from opportunity_engine.agents.models import Report
from opportunity_engine.config.settings import settings

logger = logging.getLogger(__name__)


class ReportStore(Protocol):
    def save(self, report: Report, metadata: Optional[Dict] = None) -> str:
        ...


class JsonReportStore:
    """Writes one JSON document per report."""

    def __init__(self, directory: Path = None):
        self.directory = Path(directory or settings.REPORTS_DIR)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, report_id: str) -> Path:
        return self.directory / f"{report_id}.json"

    def save(self, report: Report, metadata: Optional[Dict] = None) -> str:
        document = report.to_dict()
        if metadata:
            document["metadata"] = metadata
        path = self.path_for(report.id)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(document, f, ensure_ascii=False, indent=2, default=str)
        logger.info(f"Saved report {report.id} to {path}")
        return str(path)

    def load(self, report_id: str) -> Optional[Dict]:
        path = self.path_for(report_id)
        if not path.exists():
            return None
        with open(path, encoding='utf-8') as f:
            return json.load(f)

    def list_reports(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))
