"""
Plan feature configuration loader.

Loads per-plan resource limits and the addon catalog from
config/plan_features.yml.

Consumers:
  - PlanFeaturesService: built-in limits and limit enforcement
  - LimitChecker: plan base for capacity checks
  - AddonService: addon catalog

Usage:
    from pos_backend.config.plan_features import get_plan_features_loader

    loader = get_plan_features_loader()
    loader.get_plan_limit("PRO", "users")   # 10
    loader.get_plan_limit("ENTERPRISE", "outlets")  # None (unlimited)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

from pos_backend.constants.plans import DEFAULT_PLAN, ResourceType, SubscriptionPlan

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Fallback when the YAML file is missing
_FALLBACK_PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    SubscriptionPlan.BASIC.value: {"users": 4, "outlets": 1, "products": 25},
    SubscriptionPlan.PRO.value: {"users": 10, "outlets": 2, "products": 100},
    SubscriptionPlan.ENTERPRISE.value: {"users": UNLIMITED, "outlets": UNLIMITED, "products": UNLIMITED},
}

_FALLBACK_ADDONS: Dict[str, Dict[str, Any]] = {
    "add_outlets": {"name": "Tambah Outlet", "type": "ADD_OUTLETS", "limit": 1},
    "add_users": {"name": "Tambah Pengguna", "type": "ADD_USERS", "limit": 5},
    "add_products": {"name": "Tambah Produk", "type": "ADD_PRODUCTS", "limit": 100},
    "business_analytics": {"name": "Business Analytics & Insight", "type": "BUSINESS_ANALYTICS"},
    "export_reports": {"name": "Export Laporan", "type": "EXPORT_REPORTS"},
    "receipt_editor": {"name": "Simple Nota Editor", "type": "RECEIPT_EDITOR"},
}


@dataclass(frozen=True)
class AddonCatalogEntry:
    """One purchasable addon."""

    id: str
    name: str
    type: str
    description: Optional[str] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "limit": self.limit,
        }


class PlanFeaturesLoader:
    """
    Thread-safe singleton loader for config/plan_features.yml.

    Limits are stored as in the file (-1 = unlimited) and returned as
    Optional[int] where None means unlimited.
    """

    _instance: Optional["PlanFeaturesLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        env_path = os.getenv("PLAN_FEATURES_CONFIG")
        if env_path:
            return Path(env_path)

        candidates = [
            Path(__file__).parent.parent.parent / "config" / "plan_features.yml",
            Path(os.getcwd()) / "config" / "plan_features.yml",
            Path(os.getcwd()) / "backend" / "config" / "plan_features.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"plan_features.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading plan features from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                logger.info(
                    "Loaded plan features: plans=%s, addons=%d",
                    list(self._raw.get("plans", {}).keys()),
                    len(self._raw.get("addons", {})),
                )
            except FileNotFoundError:
                logger.warning("plan_features.yml not found, using fallback defaults")
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def _plans(self) -> Dict[str, Dict[str, int]]:
        return self._raw.get("plans") or _FALLBACK_PLAN_LIMITS

    @property
    def default_plan(self) -> str:
        return self._raw.get("default_plan", DEFAULT_PLAN.value)

    def get_plan_limit(self, plan: str, resource_type: str) -> Optional[int]:
        """
        Return the built-in limit of `resource_type` for `plan`.

        Unknown plans fall back to the default plan's limits.

        Returns:
            The limit, or None when the resource is unlimited on this plan.
        """
        plans = self._plans()
        plan_key = SubscriptionPlan(plan).value
        limits = plans.get(plan_key) or plans.get(self.default_plan, {})
        value = limits.get(ResourceType(resource_type).value)
        if value is None or int(value) == UNLIMITED:
            return None
        return int(value)

    def get_plan_limits(self, plan: str) -> Dict[str, Optional[int]]:
        """Return all resource limits for a plan."""
        return {
            resource.value: self.get_plan_limit(plan, resource.value)
            for resource in ResourceType
        }

    def get_addon_catalog(self) -> List[AddonCatalogEntry]:
        """Return the addon catalog in file order."""
        addons = self._raw.get("addons") or _FALLBACK_ADDONS
        return [
            AddonCatalogEntry(
                id=addon_id,
                name=entry.get("name", addon_id),
                type=entry["type"],
                description=entry.get("description"),
                limit=entry.get("limit"),
            )
            for addon_id, entry in addons.items()
        ]

    def get_addon(self, addon_id: str) -> Optional[AddonCatalogEntry]:
        for entry in self.get_addon_catalog():
            if entry.id == addon_id:
                return entry
        return None


def get_plan_features_loader(
    config_path: Optional[str] = None,
) -> PlanFeaturesLoader:
    """Return the singleton PlanFeaturesLoader."""
    return PlanFeaturesLoader(config_path)


def reset_plan_features_loader() -> None:
    """Reset singleton (for tests only)."""
    PlanFeaturesLoader._instance = None
