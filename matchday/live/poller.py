"""
Live-state poller and settlement loop.

One cycle:
  0. settle any finished-but-unsettled fixture (crash between commit and settle)
  1. local guard: anything live, or scheduled with kickoff in [now-3h, now+5m]?
     If not, stop here: zero external calls.
  2. pass 1: one batched live-feed call, filtered to tracked competitions
  3. pass 2: targeted lookup for fixtures absent from the feed
     (live-and-absent, overdue-and-absent)

Each fixture is applied in its own transaction and its own try/except; a
finish transition commits the final score first and settles after.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy import and_, or_, select

from matchday.cache.invalidation import InvalidationCoordinator
from matchday.database import SessionFactory
from matchday.jobs.scheduler import FixtureJobScheduler
from matchday.live.transitions import TransitionKind, diff_fixture, lookup_reason
from matchday.models import Fixture, FixtureStatus
from matchday.providers.base import FixtureSnapshot, LiveDataSource
from matchday.scoring.settlement import rescore_fixture, settle_fixture
from matchday.telemetry.metrics import record_poll_cycle
from matchday.telemetry.sentry import capture_exception
from matchday.utils.locks import redis_cycle_lock
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)

POLL_LOCK_KEY = "matchday:live-poll-lock"


class LivePoller:
    def __init__(
        self,
        session_factory: SessionFactory,
        source: LiveDataSource,
        scheduler: FixtureJobScheduler,
        invalidator: InvalidationCoordinator,
        tracked_competitions: Optional[set[int]] = None,
        lookback: timedelta = timedelta(hours=3),
        lookahead: timedelta = timedelta(minutes=5),
        overdue_grace: timedelta = timedelta(minutes=5),
        redis: Optional[Redis] = None,
        lock_ttl_seconds: int = 55,
    ):
        self.session_factory = session_factory
        self.source = source
        self.scheduler = scheduler
        self.invalidator = invalidator
        self.tracked_competitions = tracked_competitions or set()
        self.lookback = lookback
        self.lookahead = lookahead
        self.overdue_grace = overdue_grace
        self.redis = redis
        self.lock_ttl_seconds = lock_ttl_seconds
        self._lock = asyncio.Lock()

    async def poll_cycle(self, now: Optional[datetime] = None) -> dict:
        """Run one cycle. An overlapping call is skipped, never queued."""
        if self._lock.locked():
            record_poll_cycle("skipped")
            return {"status": "skipped", "reason": "in_flight", "external_calls": 0}

        async with self._lock:
            async with redis_cycle_lock(self.redis, POLL_LOCK_KEY, self.lock_ttl_seconds) as acquired:
                if not acquired:
                    record_poll_cycle("skipped")
                    return {"status": "skipped", "reason": "lock_held", "external_calls": 0}
                return await self._run_cycle(now or utcnow())

    def _is_tracked(self, snapshot: FixtureSnapshot) -> bool:
        if not self.tracked_competitions:
            return True
        return snapshot.competition_id in self.tracked_competitions

    async def _load_candidates(self, now: datetime) -> list[Fixture]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Fixture).where(
                    or_(
                        Fixture.status == FixtureStatus.LIVE,
                        and_(
                            Fixture.status == FixtureStatus.SCHEDULED,
                            Fixture.kickoff_at >= now - self.lookback,
                            Fixture.kickoff_at <= now + self.lookahead,
                        ),
                    )
                )
            )
            return list(result.scalars().all())

    async def _load_finished(self, external_ids: list[int]) -> dict[int, Fixture]:
        if not external_ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(
                select(Fixture)
                .where(Fixture.external_id.in_(external_ids))
                .where(Fixture.status == FixtureStatus.FINISHED)
            )
            return {f.external_id: f for f in result.scalars().all()}

    async def _settle_backlog(self, now: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Fixture.id)
                .where(Fixture.status == FixtureStatus.FINISHED)
                .where(Fixture.settled_at.is_(None))
                .where(Fixture.kickoff_at >= now - timedelta(days=2))
            )
            pending = [row[0] for row in result.all()]

        settled = 0
        for fixture_id in pending:
            try:
                outcome = await settle_fixture(self.session_factory, fixture_id, self.invalidator)
                if outcome["status"] in ("settled", "no_predictions"):
                    settled += 1
            except Exception as e:
                logger.error(f"[POLLER] Backlog settlement failed for fixture {fixture_id}: {e}", exc_info=True)
                capture_exception(e, job_id="live_poll", fixture_id=fixture_id)
        return settled

    async def _run_cycle(self, now: datetime) -> dict:
        summary = {
            "status": "ok",
            "checked": 0,
            "updated": 0,
            "settled": 0,
            "voided": 0,
            "errors": 0,
            "external_calls": 0,
        }
        summary["settled"] += await self._settle_backlog(now)

        candidates = await self._load_candidates(now)
        if not candidates:
            record_poll_cycle("idle")
            summary["status"] = "idle"
            return summary

        local_by_ext = {f.external_id: f for f in candidates}

        # Pass 1: one batched live-feed call
        live_snapshots = await self.source.get_live_fixtures()
        summary["external_calls"] += 1
        feed = {s.external_id: s for s in live_snapshots if self._is_tracked(s)}

        # Finished fixtures still in the feed can carry a corrected final score
        recently_finished = await self._load_finished(
            [ext for ext in feed if ext not in local_by_ext]
        )
        for external_id, snapshot in feed.items():
            fixture = local_by_ext.get(external_id) or recently_finished.get(external_id)
            if fixture is None:
                continue
            await self._apply_isolated(fixture.id, snapshot, summary)

        # Pass 2: fixtures whose absence from the feed needs explaining
        in_feed = set(feed)
        absent = {}
        for fixture in candidates:
            reason = lookup_reason(fixture, in_feed, now, self.overdue_grace)
            if reason is not None:
                absent[fixture.external_id] = (fixture, reason)

        if absent:
            logger.info(f"[POLLER] Looking up {len(absent)} fixtures absent from live feed")
            try:
                lookups = await self.source.get_fixtures_by_external_ids(list(absent))
                summary["external_calls"] += math.ceil(len(absent) / self.source.max_ids_per_request)
            except Exception as e:
                logger.error(f"[POLLER] Targeted lookup failed: {e}")
                summary["errors"] += 1
                lookups = []

            found = set()
            for snapshot in lookups:
                entry = absent.get(snapshot.external_id)
                if entry is None:
                    continue
                found.add(snapshot.external_id)
                await self._apply_isolated(entry[0].id, snapshot, summary)

            for external_id, (fixture, reason) in absent.items():
                if external_id not in found and lookups:
                    logger.warning(
                        f"[POLLER] Fixture {fixture.id} ({reason.value}) missing from lookup response"
                    )

        record_poll_cycle(
            "polled",
            live_calls=1,
            id_calls=summary["external_calls"] - 1,
            fixture_errors=summary["errors"],
        )
        logger.info(
            f"[POLLER] Cycle: checked={summary['checked']} updated={summary['updated']} "
            f"settled={summary['settled']} voided={summary['voided']} errors={summary['errors']}"
        )
        return summary

    async def _apply_isolated(self, fixture_id: int, snapshot: FixtureSnapshot, summary: dict) -> None:
        summary["checked"] += 1
        try:
            kind = await self.apply_snapshot(fixture_id, snapshot)
        except Exception as e:
            summary["errors"] += 1
            logger.error(f"[POLLER] Fixture {fixture_id} update failed: {e}", exc_info=True)
            capture_exception(e, job_id="live_poll", fixture_id=fixture_id)
            return

        if kind in (TransitionKind.UPDATE, TransitionKind.KICKOFF):
            summary["updated"] += 1
        elif kind in (TransitionKind.FINISH, TransitionKind.SCORE_CORRECTION):
            summary["updated"] += 1
            summary["settled"] += 1
        elif kind == TransitionKind.VOID:
            summary["voided"] += 1

    async def apply_snapshot(self, fixture_id: int, snapshot: FixtureSnapshot) -> TransitionKind:
        """Persist one fixture's transition, then run its follow-up (settle, re-score, void)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Fixture).where(Fixture.id == fixture_id).with_for_update()
            )
            fixture = result.scalar_one()
            transition = diff_fixture(fixture, snapshot)

            if transition.kind in (TransitionKind.NONE, TransitionKind.VOID):
                await session.rollback()
            else:
                for column, value in transition.changes.items():
                    setattr(fixture, column, value)
                fixture.updated_at = utcnow()
                await session.commit()

        if transition.kind == TransitionKind.VOID:
            await self.scheduler.void_fixture(fixture_id, reason=f"provider status {snapshot.status_code}")
        elif transition.kind == TransitionKind.FINISH:
            logger.info(
                f"[POLLER] Fixture {fixture_id} finished {snapshot.home_score}-{snapshot.away_score}, settling"
            )
            await settle_fixture(self.session_factory, fixture_id, self.invalidator)
        elif transition.kind == TransitionKind.SCORE_CORRECTION:
            logger.warning(
                f"[POLLER] Fixture {fixture_id} final score corrected to "
                f"{snapshot.home_score}-{snapshot.away_score}, re-scoring"
            )
            await rescore_fixture(self.session_factory, fixture_id, self.invalidator)
        elif transition.kind != TransitionKind.NONE:
            await self.invalidator.invalidate_fixture(fixture_id)

        return transition.kind
