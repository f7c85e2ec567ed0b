# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for ProjectActivity and NotificationBus."""
import asyncio

import pytest

from skillbench.coordinator import EVALUATION, ITERATION, ProjectActivity
from skillbench.errors import ErrorCode, SkillBenchError
from skillbench.models import Notification, NotificationType
from skillbench.notify import NotificationBus


class TestProjectActivity:

    def test_claim_and_release(self):
        act = ProjectActivity()
        act.claim("p1", EVALUATION)
        assert act.active("p1") == EVALUATION
        act.release("p1", EVALUATION)
        assert act.active("p1") is None

    def test_other_kind_is_busy(self):
        act = ProjectActivity()
        act.claim("p1", EVALUATION)
        with pytest.raises(SkillBenchError) as exc:
            act.claim("p1", ITERATION)
        assert exc.value.code == ErrorCode.RESOURCE_BUSY
        assert exc.value.details == {"active": EVALUATION}

    def test_same_kind_reclaim_allowed(self):
        act = ProjectActivity()
        act.claim("p1", ITERATION)
        act.claim("p1", ITERATION)
        assert act.active("p1") == ITERATION

    def test_projects_are_independent(self):
        act = ProjectActivity()
        act.claim("p1", EVALUATION)
        act.claim("p2", ITERATION)
        assert act.active("p2") == ITERATION

    def test_release_by_other_kind_is_noop(self):
        act = ProjectActivity()
        act.claim("p1", EVALUATION)
        act.release("p1", ITERATION)
        assert act.active("p1") == EVALUATION


def _note(project_id="p1"):
    return Notification(type=NotificationType.EVALUATION_PROGRESS, project_id=project_id)


class TestNotificationBus:

    def test_subscribe_and_unsubscribe(self):
        bus = NotificationBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        bus.publish(_note())
        unsubscribe()
        bus.publish(_note())
        assert len(seen) == 1

    def test_failing_subscriber_is_skipped(self):
        bus = NotificationBus()
        seen = []

        def broken(_):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(_note())
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_stream_filters_by_project(self):
        bus = NotificationBus()
        received = []

        async def consume():
            async for n in bus.stream("p2"):
                received.append(n)
                break

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        bus.publish(_note("p1"))
        bus.publish(_note("p2"))
        await asyncio.wait_for(task, 1.0)
        assert [n.project_id for n in received] == ["p2"]
