"""Report feed: creation, upvotes, selection and proximity listing."""

import logging
import math
import os
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

import store as store_module
import view_state
from anonymous_posts import utcnow
from mock_data import generate_mock_reports
from models import Coordinates, Report, ReportCreate

logger = logging.getLogger(__name__)

# Rough conversion used for proximity filtering
KM_PER_DEGREE = 111
DEFAULT_LIST_LIMIT = 50

SEED_MOCK_REPORTS = os.getenv("SEED_MOCK_REPORTS", "true").lower() in ("1", "true", "yes")


def new_report_id() -> str:
    return f"report-{uuid4().hex}"


def distance_km(latitude_a: float, longitude_a: float, latitude_b: float, longitude_b: float) -> float:
    """Approximate distance treating degrees as a flat grid (1 degree ~ 111 km)."""
    return math.hypot(latitude_a - latitude_b, longitude_a - longitude_b) * KM_PER_DEGREE


class ReportService:
    def __init__(self, store=None, clock: Callable[[], datetime] = utcnow):
        self.store = store if store is not None else store_module.get_store()
        self.clock = clock

    def add_report(self, data: ReportCreate, report_id: Optional[str] = None) -> Report:
        """
        Create a report from client data and put it at the front of the feed.

        Parameters:
            data: Submitted report fields.
            report_id: Pre-generated id, used when the id was already consumed
                by the anonymous quota tracker.

        Returns:
            Report: The stored report with `upvotes=0` and `verified=False`.
        """
        report = Report(
            id=report_id or new_report_id(),
            timestamp=self.clock(),
            upvotes=0,
            verified=False,
            **data.model_dump(),
        )
        self.store.add_report(report)
        logger.info("Created report %s (agency %s)", report.id, report.agency_id)
        return report

    def upvote_report(self, report_id: str) -> Optional[Report]:
        """
        Add one upvote. Unknown ids are a no-op and return None.
        """
        return self.store.increment_report_upvotes(report_id)

    def get_report(self, report_id: str) -> Optional[Report]:
        return self.store.get_report(report_id)

    def delete_report(self, report_id: str) -> bool:
        """Remove a report, used to withdraw one whose post could not be counted."""
        removed = self.store.delete_report(report_id)
        if removed:
            logger.info("Deleted report %s", report_id)
        return removed

    def list_reports(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius_km: Optional[float] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Tuple[List[Report], int]:
        """
        List reports newest first, optionally restricted to a radius.

        The proximity filter only applies when latitude, longitude and radius are
        all given.

        Returns:
            Tuple of (reports truncated to `limit`, total matching count).
        """
        reports = self.store.get_all_reports()
        if latitude is not None and longitude is not None and radius_km is not None:
            reports = [
                report
                for report in reports
                if distance_km(report.latitude, report.longitude, latitude, longitude) <= radius_km
            ]
        return reports[:limit], len(reports)

    # Presentation state
    def select_report(self, viewer_id: str, report_id: Optional[str]) -> view_state.ViewState:
        return view_state.update_view_state(viewer_id, selected_report_id=report_id)

    def set_user_location(self, viewer_id: str, location: Optional[Coordinates]) -> view_state.ViewState:
        return view_state.update_view_state(viewer_id, user_location=location)

    def set_map_region(self, viewer_id: str, region: Coordinates) -> view_state.ViewState:
        return view_state.update_view_state(viewer_id, map_region=region)

    def seed_mock_reports(self, count: int = 15) -> int:
        """
        Fill an empty feed with generated reports.

        Returns:
            int: Number of reports added (0 if the feed already had data).
        """
        if self.store.count_reports() > 0:
            return 0
        # Oldest first so the feed ends up newest first.
        mock_reports = sorted(generate_mock_reports(count, now=self.clock()), key=lambda r: r.timestamp)
        for report in mock_reports:
            self.store.add_report(report)
        logger.info("Seeded %d mock reports", len(mock_reports))
        return len(mock_reports)
