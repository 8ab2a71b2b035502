from __future__ import annotations

from dataclasses import dataclass

from app.surplus.core.context import ORG_ADMIN, IdentityContext
from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.core.metrics import metrics


READ_MATERIAL = "READ_MATERIAL"
READ_TRANSFER = "READ_TRANSFER"
CREATE_MATERIAL = "CREATE_MATERIAL"
UPDATE_MATERIAL = "UPDATE_MATERIAL"
MARK_SURPLUS = "MARK_SURPLUS"
ARCHIVE_MATERIAL = "ARCHIVE_MATERIAL"
CREATE_TRANSFER = "CREATE_TRANSFER"
APPROVE_TRANSFER = "APPROVE_TRANSFER"
REJECT_TRANSFER = "REJECT_TRANSFER"
CANCEL_TRANSFER = "CANCEL_TRANSFER"
COMPLETE_TRANSFER = "COMPLETE_TRANSFER"
READ_AUDIT = "READ_AUDIT"

READ_ACTIONS = frozenset({READ_MATERIAL, READ_TRANSFER})
MATERIAL_MUTATIONS = frozenset({CREATE_MATERIAL, UPDATE_MATERIAL, MARK_SURPLUS, ARCHIVE_MATERIAL})
TWO_PARTY_ACTIONS = frozenset({CREATE_TRANSFER, CANCEL_TRANSFER, COMPLETE_TRANSFER})
ACTIONS = frozenset(
    READ_ACTIONS
    | MATERIAL_MUTATIONS
    | {CREATE_TRANSFER, APPROVE_TRANSFER, REJECT_TRANSFER, CANCEL_TRANSFER, COMPLETE_TRANSFER, READ_AUDIT}
)


@dataclass(frozen=True)
class ResourceRef:
    """What an action touches: the owning organization plus transfer parties."""

    organization_id: str
    category: str
    from_organization_id: str | None = None
    to_organization_id: str | None = None
    requested_by: str | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    rule: str


def _allow(rule: str) -> Decision:
    return Decision(True, rule)


def _deny(rule: str) -> Decision:
    return Decision(False, rule)


def _is_party(identity: IdentityContext, resource: ResourceRef) -> bool:
    return identity.organization_id in {
        resource.from_organization_id,
        resource.to_organization_id,
    }


def decide(identity: IdentityContext, action: str, resource: ResourceRef) -> Decision:
    """Evaluate the ordered rule list; the first rule that matches decides.

    Pure function of its inputs. Nothing is cached between calls.
    """
    if action not in ACTIONS:
        return _deny("unknown_action")

    if identity.is_platform_admin:
        return _allow("platform_admin")

    if action in READ_ACTIONS and identity.organization_category == resource.category:
        return _allow("category_read")

    same_organization = identity.organization_id == resource.organization_id
    if action not in READ_ACTIONS and not same_organization and action not in TWO_PARTY_ACTIONS:
        return _deny("cross_organization_mutation")

    if action in {APPROVE_TRANSFER, REJECT_TRANSFER}:
        if identity.organization_id == resource.from_organization_id and identity.role == ORG_ADMIN:
            return _allow("owner_admin_decision")
        return _deny("owner_admin_decision")

    if action in {CANCEL_TRANSFER, COMPLETE_TRANSFER}:
        if resource.requested_by is not None and identity.user_id == resource.requested_by:
            return _allow("requester")
        if identity.role == ORG_ADMIN and _is_party(identity, resource):
            return _allow("party_admin")
        return _deny("transfer_party")

    if action == CREATE_TRANSFER:
        if identity.organization_category == resource.category:
            return _allow("category_request")
        return _deny("category_request")

    if action in MATERIAL_MUTATIONS or action == READ_AUDIT:
        if same_organization and identity.role == ORG_ADMIN:
            return _allow("organization_admin")
        return _deny("organization_admin")

    return _deny("default")


def authorize(identity: IdentityContext, action: str, resource: ResourceRef) -> Decision:
    decision = decide(identity, action, resource)
    if not decision.allowed:
        metrics.increment_forbidden(action)
        raise AppError(ErrorCatalog.FORBIDDEN, details={"action": action, "rule": decision.rule})
    return decision
