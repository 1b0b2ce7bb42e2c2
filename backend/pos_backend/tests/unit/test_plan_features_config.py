"""
Unit tests for the plan features configuration loader.

Tests cover:
- Limits and addon catalog read from YAML
- -1 limits reported as unlimited (None)
- Fallback defaults when the file is missing
- Config path resolution via PLAN_FEATURES_CONFIG
- Singleton behaviour and reload
"""

import pytest

from pos_backend.config.plan_features import (
    PlanFeaturesLoader,
    get_plan_features_loader,
    reset_plan_features_loader,
)


CUSTOM_CONFIG = {
    "version": 1,
    "default_plan": "BASIC",
    "plans": {
        "BASIC": {"users": 2, "outlets": 1, "products": 10},
        "PRO": {"users": 8, "outlets": 3, "products": -1},
        "ENTERPRISE": {"users": -1, "outlets": -1, "products": -1},
    },
    "addons": {
        "more_users": {"name": "More Users", "type": "ADD_USERS", "limit": 3},
        "analytics": {"name": "Analytics", "type": "BUSINESS_ANALYTICS"},
    },
}


class TestBundledConfig:
    """Tests against the shipped config/plan_features.yml."""

    def test_basic_limits(self):
        loader = get_plan_features_loader()
        assert loader.get_plan_limits("BASIC") == {"outlets": 1, "users": 4, "products": 25}

    def test_enterprise_is_unlimited(self):
        loader = get_plan_features_loader()
        assert loader.get_plan_limit("ENTERPRISE", "users") is None

    def test_catalog_lists_every_addon(self):
        catalog = get_plan_features_loader().get_addon_catalog()
        assert [entry.id for entry in catalog] == [
            "add_outlets",
            "add_users",
            "add_products",
            "business_analytics",
            "export_reports",
            "receipt_editor",
        ]

    def test_receipt_editor_display_name(self):
        entry = get_plan_features_loader().get_addon("receipt_editor")
        assert entry.name == "Simple Nota Editor"
        assert entry.limit is None

    def test_unknown_addon_is_none(self):
        assert get_plan_features_loader().get_addon("nope") is None


class TestCustomConfig:
    """Tests with a YAML file written by the test."""

    def test_explicit_path(self, make_yaml_config):
        path = make_yaml_config("plan_features.yml", CUSTOM_CONFIG)
        loader = get_plan_features_loader(str(path))

        assert loader.get_plan_limit("BASIC", "users") == 2
        assert loader.get_plan_limit("PRO", "products") is None
        assert loader.get_addon("more_users").limit == 3
        assert loader.get_addon("analytics").to_dict()["type"] == "BUSINESS_ANALYTICS"

    def test_env_var_path(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("features.yml", CUSTOM_CONFIG)
        monkeypatch.setenv("PLAN_FEATURES_CONFIG", str(path))

        assert get_plan_features_loader().get_plan_limit("PRO", "outlets") == 3

    def test_unknown_resource_type_raises(self, make_yaml_config):
        loader = get_plan_features_loader(str(make_yaml_config("p.yml", CUSTOM_CONFIG)))
        with pytest.raises(ValueError):
            loader.get_plan_limit("BASIC", "tables")

    def test_plan_missing_from_file_uses_default_plan(self, make_yaml_config):
        config = {"default_plan": "BASIC", "plans": {"BASIC": {"users": 2, "outlets": 1, "products": 10}}}
        loader = get_plan_features_loader(str(make_yaml_config("p.yml", config)))
        assert loader.get_plan_limit("PRO", "users") == 2

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("p.yml", CUSTOM_CONFIG)
        loader = get_plan_features_loader(str(path))

        changed = dict(CUSTOM_CONFIG, plans={**CUSTOM_CONFIG["plans"], "BASIC": {"users": 6, "outlets": 1, "products": 10}})
        make_yaml_config("p.yml", changed)
        loader.reload()

        assert loader.get_plan_limit("BASIC", "users") == 6


class TestFallback:
    """Tests for the built-in defaults used without a config file."""

    def test_missing_file_uses_fallback(self, tmp_path):
        loader = get_plan_features_loader(str(tmp_path / "missing.yml"))

        assert loader.get_plan_limit("BASIC", "outlets") == 1
        assert loader.get_plan_limit("PRO", "users") == 10
        assert loader.get_plan_limit("ENTERPRISE", "products") is None
        assert loader.get_addon("add_users").limit == 5
        assert loader.default_plan == "BASIC"


class TestSingleton:
    def test_same_instance(self):
        assert get_plan_features_loader() is get_plan_features_loader()
        assert PlanFeaturesLoader() is get_plan_features_loader()

    def test_reset_creates_new_instance(self):
        first = get_plan_features_loader()
        reset_plan_features_loader()
        assert get_plan_features_loader() is not first
