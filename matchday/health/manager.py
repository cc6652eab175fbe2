"""
Predictor health manager.

Every state change is a single atomic UPDATE at the storage layer, never a
read-modify-write in Python: many predictors fail in the same instant when a
forecast provider has an outage, and the same predictor can be hit by several
workers at once.

    record_failure:  failures + 1 (RETURNING) -> CAS active=true -> false
    record_success:  failures = 0
    attempt_recovery: one batch UPDATE ... RETURNING for auto-disabled rows
                      past the cooldown, then one cache invalidation
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update

from matchday.cache.invalidation import InvalidationCoordinator
from matchday.database import SessionFactory
from matchday.models import Predictor
from matchday.telemetry.metrics import record_predictor_event
from matchday.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN = timedelta(hours=1)

_NO_SYNC = {"synchronize_session": False}


class PredictorHealthManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        invalidator: InvalidationCoordinator,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown: timedelta = DEFAULT_COOLDOWN,
    ):
        self.session_factory = session_factory
        self.invalidator = invalidator
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._recovery_lock = asyncio.Lock()

    async def record_success(self, predictor_id: int) -> None:
        """Reset the failure streak. Never re-enables a disabled predictor."""
        now = utcnow()
        async with self.session_factory() as session:
            await session.execute(
                update(Predictor)
                .where(Predictor.id == predictor_id)
                .values(consecutive_failures=0, last_success_at=now)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
        record_predictor_event("success")

    async def record_failure(self, predictor_id: int, reason: str = "") -> dict:
        """
        Count one failure; disable the predictor when the streak reaches the threshold.

        Returns {"failures": n, "disabled": bool}. `disabled` is True for exactly
        one caller per disable event, even under concurrent failures.
        """
        now = utcnow()
        reason = (reason or "unknown error")[:500]

        async with self.session_factory() as session:
            result = await session.execute(
                update(Predictor)
                .where(Predictor.id == predictor_id)
                .values(
                    consecutive_failures=Predictor.consecutive_failures + 1,
                    last_failure_at=now,
                    failure_reason=reason,
                )
                .returning(Predictor.consecutive_failures, Predictor.name)
                .execution_options(**_NO_SYNC)
            )
            row = result.first()
            if row is None:
                await session.rollback()
                logger.error(f"[HEALTH] record_failure for unknown predictor {predictor_id}")
                return {"failures": 0, "disabled": False}

            failures, name = row[0], row[1]
            disabled = False
            if failures >= self.failure_threshold:
                cas = await session.execute(
                    update(Predictor)
                    .where(Predictor.id == predictor_id)
                    .where(Predictor.active.is_(True))
                    .values(active=False, disabled_at=now, auto_disabled=True)
                    .execution_options(**_NO_SYNC)
                )
                disabled = cas.rowcount == 1
            await session.commit()

        record_predictor_event("failure")
        if disabled:
            logger.warning(
                f"[HEALTH] Predictor {name} (id={predictor_id}) auto-disabled after "
                f"{failures} consecutive failures: {reason}"
            )
            record_predictor_event("disabled")
            await self.invalidator.invalidate_on_predictor_change()
        else:
            logger.info(f"[HEALTH] Predictor {name} failure {failures}/{self.failure_threshold}: {reason}")

        return {"failures": failures, "disabled": disabled}

    async def attempt_recovery(self, now: Optional[datetime] = None) -> dict:
        """Re-enable every auto-disabled predictor whose cooldown has elapsed."""
        if self._recovery_lock.locked():
            return {"status": "skipped", "reason": "already_running"}

        async with self._recovery_lock:
            now = now or utcnow()
            cutoff = now - self.cooldown
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Predictor)
                    .where(Predictor.active.is_(False))
                    .where(Predictor.auto_disabled.is_(True))
                    .where(Predictor.disabled_at < cutoff)
                    .values(
                        active=True,
                        consecutive_failures=0,
                        disabled_at=None,
                        auto_disabled=False,
                        failure_reason=None,
                    )
                    .returning(Predictor.id, Predictor.name)
                    .execution_options(**_NO_SYNC)
                )
                recovered = result.all()
                await session.commit()

            if not recovered:
                return {"status": "ok", "recovered": []}

            names = [r[1] for r in recovered]
            logger.info(f"[HEALTH] Re-enabled {len(recovered)} predictors after cooldown: {', '.join(names)}")
            record_predictor_event("recovered", count=len(recovered))
            # One invalidation for the whole batch
            await self.invalidator.invalidate_on_predictor_change()
            return {"status": "ok", "recovered": [r[0] for r in recovered]}

    async def disable_predictor(self, predictor_id: int, reason: str) -> bool:
        """Manual disable. Not eligible for automatic recovery."""
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Predictor)
                .where(Predictor.id == predictor_id)
                .values(active=False, disabled_at=now, auto_disabled=False, failure_reason=reason[:500])
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
        if result.rowcount == 0:
            return False
        logger.info(f"[HEALTH] Predictor {predictor_id} manually disabled: {reason}")
        record_predictor_event("manual_disable")
        await self.invalidator.invalidate_on_predictor_change()
        return True

    async def re_enable_predictor(self, predictor_id: int) -> bool:
        """Manual re-enable, regardless of cooldown."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Predictor)
                .where(Predictor.id == predictor_id)
                .values(
                    active=True,
                    consecutive_failures=0,
                    disabled_at=None,
                    auto_disabled=False,
                    failure_reason=None,
                )
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
        if result.rowcount == 0:
            return False
        logger.info(f"[HEALTH] Predictor {predictor_id} manually re-enabled")
        record_predictor_event("manual_enable")
        await self.invalidator.invalidate_on_predictor_change()
        return True

    async def get_health_summary(self) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(select(Predictor).order_by(Predictor.name))
            predictors = result.scalars().all()

        rows = [
            {
                "id": p.id,
                "name": p.name,
                "active": p.active,
                "consecutive_failures": p.consecutive_failures,
                "auto_disabled": p.auto_disabled,
                "disabled_at": p.disabled_at.isoformat() if p.disabled_at else None,
                "failure_reason": p.failure_reason,
                "last_success_at": p.last_success_at.isoformat() if p.last_success_at else None,
            }
            for p in predictors
        ]
        return {
            "total": len(rows),
            "active": sum(1 for r in rows if r["active"]),
            "disabled": sum(1 for r in rows if not r["active"]),
            "predictors": rows,
        }
