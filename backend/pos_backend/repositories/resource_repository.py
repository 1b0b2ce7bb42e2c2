"""
Repository for the limit-bearing tenant resources: users, outlets, products.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from pos_backend.constants.plans import ResourceType
from pos_backend.models.outlet import Outlet, Product
from pos_backend.models.user import User

logger = logging.getLogger(__name__)

RESOURCE_MODELS = {
    ResourceType.USERS: User,
    ResourceType.OUTLETS: Outlet,
    ResourceType.PRODUCTS: Product,
}


class TenantResourceRepository:
    """
    Counts and toggles tenant resources.

    All methods enforce tenant isolation via tenant_id parameter.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def count_active(self, tenant_id: str, resource_type: str) -> int:
        """Number of active rows of `resource_type` owned by the tenant."""
        model = RESOURCE_MODELS[ResourceType(resource_type)]
        return self.db.query(model).filter(
            model.tenant_id == tenant_id,
            model.is_active.is_(True),
        ).count()

    def list_resources(self, tenant_id: str, resource_type: str) -> list:
        """All rows of `resource_type` for the tenant, oldest first."""
        model = RESOURCE_MODELS[ResourceType(resource_type)]
        return (
            self.db.query(model)
            .filter(model.tenant_id == tenant_id)
            .order_by(model.created_at.asc(), model.id.asc())
            .all()
        )

    def list_users_by_roles(
        self,
        tenant_id: str,
        roles: Iterable[str],
        is_active: Optional[bool] = None,
    ) -> List[User]:
        """Users of the tenant holding one of `roles`, oldest first."""
        role_values = [getattr(role, "value", role) for role in roles]
        query = self.db.query(User).filter(
            User.tenant_id == tenant_id,
            User.role.in_(role_values),
        )
        if is_active is not None:
            query = query.filter(User.is_active.is_(is_active))
        return query.order_by(User.created_at.asc(), User.id.asc()).all()

    def set_users_active(self, tenant_id: str, user_ids: Iterable[str], is_active: bool) -> int:
        """Set is_active on the given users of the tenant. Returns rows changed."""
        user_ids = list(user_ids)
        if not user_ids:
            return 0
        count = (
            self.db.query(User)
            .filter(
                User.tenant_id == tenant_id,
                User.id.in_(user_ids),
                User.is_active != is_active,
            )
            .update({User.is_active: is_active}, synchronize_session="fetch")
        )
        return count
