# app/handoff/tasks.py
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.handoff.config import HandoffSettings, settings as handoff_settings
from app.handoff.escalation import EscalationPolicy

logger = logging.getLogger(__name__)


class HandoffSweeper:
    """Background loop that expires unclaimed handoffs and marks silent agents offline"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 config: HandoffSettings = None):
        self.session_factory = session_factory
        self.config = config or handoff_settings
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One sweep pass; each pass gets its own session"""
        db = self.session_factory()
        try:
            policy = EscalationPolicy(db, config=self.config)
            expired = policy.expire_overdue(now=now)
            offline = policy.mark_stale_agents_offline(now=now)
            return {"expired_handoffs": len(expired), "agents_marked_offline": len(offline)}
        finally:
            db.close()

    async def _loop(self):
        logger.info(f"Handoff sweeper started (every {self.config.sweep_interval_seconds}s)")
        while self.running:
            try:
                result = await asyncio.to_thread(self.run_once)
                if any(result.values()):
                    logger.info(f"Handoff sweep: {result}")
            except Exception as e:
                logger.error(f"Handoff sweeper error: {e}")
            await asyncio.sleep(self.config.sweep_interval_seconds)

    def start(self) -> Optional[asyncio.Task]:
        """Schedule the loop on the running event loop"""
        if not self.config.sweeper_enabled:
            logger.info("Handoff sweeper disabled")
            return None
        if self._task and not self._task.done():
            return self._task

        self.running = True
        self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Handoff sweeper stopped")


# Global sweeper instance
sweeper = HandoffSweeper()
