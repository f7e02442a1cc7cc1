"""Analysis report library.

Every successful analysis is kept as an AnalysisReport in the
``intel_reports`` collection. The library is capped per user (oldest reports
go first), feeds recent reports back to the score provider as context, and
lets the agent trade on fresh reports without re-analyzing.
"""
import logging
from datetime import datetime, timedelta

from coinagent.core.data_store import DocumentStore, query_ordered
from coinagent.models import AnalysisReport
from coinagent.scoring import signal_for

logger = logging.getLogger(__name__)

REPORTS = "intel_reports"


class ReportLibrary:
    """Stores and retrieves analysis reports for one store."""

    def __init__(self, store: DocumentStore, max_reports: int = 500, history_depth: int = 3):
        self.store = store
        self.max_reports = max_reports
        self.history_depth = history_depth

    def save_report(self, report: AnalysisReport) -> str:
        """Persist a report and enforce the library limit.

        Returns:
            The id of the stored report
        """
        report_id = self.store.append(REPORTS, report.to_dict())
        logger.debug(f"Saved {report.asset} report {report_id} for {report.user_id}")
        self.enforce_limit(report.user_id)
        return report_id

    def enforce_limit(self, user_id: str) -> int:
        """Delete the oldest reports beyond ``max_reports``.

        Returns:
            Number of reports deleted
        """
        docs = query_ordered(self.store, REPORTS, user_id)
        excess = len(docs) - self.max_reports
        if excess <= 0:
            return 0

        removed = self.store.delete_ids(REPORTS, [d["id"] for d in docs[:excess]])
        logger.info(f"Library limit {self.max_reports} reached for {user_id}, removed {removed} oldest reports")
        return removed

    def list_reports(self, user_id: str, asset: str | None = None) -> list[AnalysisReport]:
        """Reports newest first, optionally for one asset."""
        docs = query_ordered(self.store, REPORTS, user_id, descending=True)
        if asset is not None:
            docs = [d for d in docs if d.get("asset") == asset.upper()]
        return [AnalysisReport.from_dict(d) for d in docs]

    def history_context(self, user_id: str, asset: str) -> str | None:
        """Summary lines of the latest reports for an asset, newest first.

        Returns:
            One "Date: ... | Price: $... | Score: ... | Signal: ..." line per
            report, or None when the asset has no reports
        """
        reports = self.list_reports(user_id, asset)[: self.history_depth]
        if not reports:
            return None

        return "\n".join(
            f"Date: {r.created_at.strftime('%Y-%m-%d')} | Price: ${r.price.price} | "
            f"Score: {r.score.score} | Signal: {signal_for(r.score.score)}"
            for r in reports
        )

    def fresh_reports(
        self,
        user_id: str,
        targets: list[str],
        max_age_minutes: int,
        now: datetime | None = None,
    ) -> list[AnalysisReport]:
        """Newest report per target, if younger than ``max_age_minutes``.

        Returns:
            Reports in target order; stale or missing targets are left out
        """
        now = now or datetime.now()
        cutoff = now - timedelta(minutes=max_age_minutes)

        latest: dict[str, AnalysisReport] = {}
        for report in self.list_reports(user_id):
            latest.setdefault(report.asset, report)

        fresh = []
        for target in targets:
            report = latest.get(target.upper())
            if report is None:
                continue
            if report.created_at < cutoff:
                logger.debug(f"{target} report from {report.created_at} is stale")
                continue
            fresh.append(report)
        return fresh
