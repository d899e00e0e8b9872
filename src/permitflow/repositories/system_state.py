"""Operational flags shared by every process (system_state table)."""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from permitflow.core.timezone import utcnow
from permitflow.models.system_state import SystemState


class SystemStateRepository:
    """Boolean flags stored as ``{"enabled": bool}`` rows keyed by flag name.

    Workers read flags on every poll, so each read goes to the database rather
    than the session identity map.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_flag(self, key: str) -> bool:
        """Absent flags read as disabled."""
        value = await self.session.scalar(
            select(SystemState.state_value).where(SystemState.key == key)  # type: ignore[arg-type]
        )
        return bool(value and value.get("enabled"))

    async def set_flag(self, key: str, enabled: bool) -> None:
        now = utcnow()
        value = {"enabled": enabled}
        stmt = (
            insert(SystemState)
            .values(key=key, state_value=value, updated_at=now)
            .on_conflict_do_update(
                index_elements=["key"], set_={"state_value": value, "updated_at": now}
            )
        )
        await self.session.execute(stmt)
