from dataclasses import dataclass

PLATFORM_ADMIN = "PLATFORM_ADMIN"
ORG_ADMIN = "ORG_ADMIN"
ORG_USER = "ORG_USER"
ROLES = (PLATFORM_ADMIN, ORG_ADMIN, ORG_USER)

ORGANIZATION_CATEGORIES = (
    "ENTERPRISE",
    "MANUFACTURING_CLUSTER",
    "EDUCATIONAL_INSTITUTION",
    "HEALTHCARE_NETWORK",
    "INFRASTRUCTURE_CONSTRUCTION",
)


@dataclass(frozen=True)
class IdentityContext:
    """Resolved caller identity, passed explicitly into every core operation."""

    user_id: str
    organization_id: str
    organization_category: str
    role: str
    trace_id: str = ""

    @property
    def is_platform_admin(self) -> bool:
        return self.role == PLATFORM_ADMIN

    @property
    def is_org_admin(self) -> bool:
        return self.role == ORG_ADMIN


def build_identity_context(
    *,
    user_id,
    organization_id,
    organization_category: str,
    role: str,
    trace_id: str = "",
) -> IdentityContext:
    return IdentityContext(
        user_id=str(user_id),
        organization_id=str(organization_id),
        organization_category=(organization_category or "").upper(),
        role=(role or "").upper(),
        trace_id=trace_id,
    )
