from datetime import datetime, timedelta, timezone

import pytest

from approval_workflow.services.escalation import find_overdue, is_request_overdue, step_started_at

CREATED = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
SLA = timedelta(days=3)


class TestIsRequestOverdue:
    @pytest.mark.parametrize(
        "elapsed, expected",
        [
            (timedelta(days=2, hours=23), False),
            (SLA, False),
            (SLA + timedelta(seconds=1), True),
            (timedelta(days=10), True),
        ],
    )
    def test_boundary(self, build_request, elapsed, expected):
        request = build_request(createdAt=CREATED)
        assert is_request_overdue(request, now=CREATED + elapsed, sla=SLA) is expected

    @pytest.mark.parametrize("status", ["approved", "rejected", "cancelled", "escalated"])
    def test_only_open_requests(self, build_request, status):
        request = build_request(status=status, createdAt=CREATED)
        assert not is_request_overdue(request, now=CREATED + timedelta(days=30), sla=SLA)

    def test_clock_restarts_at_previous_decision(self, build_request):
        request = build_request(createdAt=CREATED, currentStep=1, status="in_progress")
        request.approvalChain[0].status = "approved"
        request.approvalChain[0].decidedAt = CREATED + timedelta(days=2)

        assert step_started_at(request) == CREATED + timedelta(days=2)
        assert not is_request_overdue(request, now=CREATED + timedelta(days=4), sla=SLA)
        assert is_request_overdue(request, now=CREATED + timedelta(days=6), sla=SLA)

    def test_pure(self, build_request):
        request = build_request(createdAt=CREATED)
        before = request.model_dump()
        is_request_overdue(request, now=CREATED + timedelta(days=9), sla=SLA)
        assert request.model_dump() == before


def test_find_overdue(build_request):
    fresh = build_request(requestId=1, createdAt=CREATED + timedelta(days=2))
    stale = build_request(requestId=2, createdAt=CREATED)
    done = build_request(requestId=3, createdAt=CREATED, status="approved")
    overdue = find_overdue([fresh, stale, done], now=CREATED + timedelta(days=4), sla=SLA)
    assert [r.requestId for r in overdue] == [2]
