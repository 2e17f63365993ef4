"""Device target registry: registration, lookup and invalidation."""

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from dealerhub.common.clock import Clock, utcnow
from dealerhub.common.errors import NotFoundError
from dealerhub.common.identity import OPERATOR_ROLES
from dealerhub.common.logging import logger
from dealerhub.common.metrics import invalid_targets_removed_total
from dealerhub.services.notification.models import DeviceTarget, User


def token_prefix(identifier: str) -> str:
    """Log-safe prefix of a device identifier."""

    return identifier[:20] + "..."


class DeviceRegistry:
    """Owns the `device_targets` table.

    A principal has at most one target (last write wins). Anonymous targets
    are keyed by their identifier. Invalidation deletes by identifier only, so
    a target re-registered with a fresh identifier is never cleared by a stale
    failure.
    """

    def __init__(self, session_factory, clock: Clock = utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def _write(self, apply, token: str) -> DeviceTarget:
        """Run `apply(db)` and commit; a concurrent insert of the same row is retried once.

        The retry re-reads the row the other writer committed and updates it,
        so the later registration wins.
        """

        with self.session_factory() as db:
            try:
                target = apply(db)
                db.commit()
                return target
            except IntegrityError:
                db.rollback()
                logger.info("device target registration raced, retrying token=%s", token)
        with self.session_factory() as db:
            target = apply(db)
            db.commit()
            return target

    def register_anonymous(self, identifier: str, platform: str | None = None) -> DeviceTarget:
        """Create or refresh a guest target; an owned identifier only has its timestamp refreshed."""

        identifier = identifier.strip()
        if not identifier:
            raise ValueError("device identifier is required")

        def apply(db) -> DeviceTarget:
            target = db.execute(
                select(DeviceTarget).where(DeviceTarget.identifier == identifier)
            ).scalar_one_or_none()
            if target is None:
                target = DeviceTarget(identifier=identifier, owner_id=None, platform=platform)
                db.add(target)
            target.updated_at = self.clock()
            return target

        target = self._write(apply, token_prefix(identifier))
        logger.debug("guest device target registered token=%s", token_prefix(identifier))
        return target

    def register_for_principal(
        self, principal_id: str, identifier: str, platform: str | None = None
    ) -> DeviceTarget:
        """Point the principal's single target at `identifier`."""

        identifier = identifier.strip()
        if not identifier:
            raise ValueError("device identifier is required")

        def apply(db) -> DeviceTarget:
            if db.get(User, principal_id) is None:
                raise NotFoundError("User")
            existing = db.execute(
                select(DeviceTarget).where(DeviceTarget.identifier == identifier)
            ).scalar_one_or_none()
            if existing is not None and existing.owner_id != principal_id:
                # The identifier moves to its new owner (guest install that signed in, or a handed-over device).
                db.delete(existing)
                db.flush()
                existing = None
            target = existing or db.execute(
                select(DeviceTarget).where(DeviceTarget.owner_id == principal_id)
            ).scalar_one_or_none()
            if target is None:
                target = DeviceTarget(owner_id=principal_id, identifier=identifier)
                db.add(target)
            target.identifier = identifier
            target.platform = platform or target.platform
            target.updated_at = self.clock()
            return target

        target = self._write(apply, token_prefix(identifier))
        logger.info("device target updated principal_id=%s", principal_id)
        return target

    def remove_for_principal(self, principal_id: str) -> bool:
        """Clear the principal's target (sign-out)."""

        with self.session_factory() as db:
            result = db.execute(delete(DeviceTarget).where(DeviceTarget.owner_id == principal_id))
            db.commit()
        removed = result.rowcount > 0
        logger.info("device target removed principal_id=%s removed=%s", principal_id, removed)
        return removed

    def identifiers_for(self, principal_ids: list[str]) -> list[str]:
        if not principal_ids:
            return []
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(DeviceTarget.identifier).where(DeviceTarget.owner_id.in_(principal_ids))
                ).scalars()
            )

    def operator_identifiers(self) -> list[str]:
        roles = [role.value for role in OPERATOR_ROLES]
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(DeviceTarget.identifier)
                    .join(User, User.id == DeviceTarget.owner_id)
                    .where(User.role.in_(roles), User.is_active.is_(True))
                ).scalars()
            )

    def anonymous_identifiers(self) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.execute(select(DeviceTarget.identifier).where(DeviceTarget.owner_id.is_(None))).scalars()
            )

    def invalidate(self, identifiers: list[str]) -> int:
        """Delete targets that still carry one of the failed identifiers."""

        if not identifiers:
            return 0
        with self.session_factory() as db:
            result = db.execute(delete(DeviceTarget).where(DeviceTarget.identifier.in_(identifiers)))
            db.commit()
        removed = result.rowcount
        invalid_targets_removed_total.inc(removed)
        logger.info("invalid device targets removed count=%s reported=%s", removed, len(identifiers))
        return removed
