from __future__ import annotations

from dataclasses import dataclass, field

from apihub.core.config import Settings


@dataclass(frozen=True, slots=True)
class SecurityContext:
    """Caller identity threaded explicitly through service calls."""

    user_id: str
    token: str | None = None
    breadcrumb: tuple[str, ...] = field(default_factory=tuple)

    def with_step(self, step: str) -> "SecurityContext":
        return SecurityContext(user_id=self.user_id, token=self.token, breadcrumb=(*self.breadcrumb, step))

    def describe(self) -> str:
        if not self.breadcrumb:
            return self.user_id
        return f"{self.user_id} [{' > '.join(self.breadcrumb)}]"


SYSTEM_CONTEXT = SecurityContext(user_id="system")


class RoleService:
    def __init__(self, settings: Settings):
        self._settings = settings

    def available_publish_statuses(self, ctx: SecurityContext, package_id: str) -> list[str]:
        overrides = self._settings.publish_statuses_by_user.get(ctx.user_id)
        if overrides is not None:
            return sorted(set(overrides))
        return sorted(set(self._settings.default_publish_statuses))

    def can_publish(self, ctx: SecurityContext, package_id: str, status: str) -> bool:
        return status in self.available_publish_statuses(ctx, package_id)
