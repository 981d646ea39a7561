#!/usr/bin/env python3
"""
Unit tests for the Component Registry
"""

import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from aquarium.components import (
    ComponentKind, ComponentInstance, Hooks, HookContext, Registry,
    default_registry, install_ssh_key, require_layer, noop,
)
from aquarium.config import AquariumConfig
from aquarium.errors import MissingPrerequisiteFile, UnknownComponent, UnknownInstance


@pytest.fixture
def registry():
    return default_registry()


# ── Lookup Tests ─────────────────────────────────────────────────

class TestLookup:

    def test_catalog_names(self, registry):
        assert registry.names() == {
            "base-container", "zookeeper", "registry", "builder",
            "router", "supervisor", "manager",
        }

    def test_catalog_order(self, registry):
        assert registry.ordered_names()[0] == "base-container"
        assert registry.ordered_names()[-1] == "manager"

    def test_lookup_unknown(self, registry):
        with pytest.raises(UnknownComponent) as excinfo:
            registry.lookup("foo")
        assert excinfo.value.name == "foo"
        assert "router" in excinfo.value.available

    def test_contains(self, registry):
        assert "router" in registry
        assert "all" not in registry

    def test_duplicate_kind_rejected(self):
        with pytest.raises(ValueError):
            Registry([ComponentKind(name="x"), ComponentKind(name="x")])


# ── Instance Resolution Tests ────────────────────────────────────

class TestResolution:

    def test_each_instance_all(self, registry):
        router = registry.lookup("router")
        ids = [i.id for i in registry.each_instance(router)]
        assert ids == ["internal", "external"]
        assert [i.id for i in registry.each_instance(router, "all")] == ids

    def test_each_instance_specific(self, registry):
        [inst] = registry.each_instance(registry.lookup("supervisor"), "2")
        assert inst.name == "supervisor-2"

    def test_each_instance_undeclared(self, registry):
        with pytest.raises(UnknownInstance) as excinfo:
            registry.each_instance(registry.lookup("router"), "sideways")
        assert excinfo.value.declared == ["internal", "external"]

    def test_singleton_has_one_anonymous_instance(self, registry):
        [inst] = registry.each_instance(registry.lookup("zookeeper"))
        assert inst.id is None
        assert inst.name == "zookeeper"

    def test_singleton_rejects_instance_id(self, registry):
        with pytest.raises(UnknownInstance):
            registry.each_instance(registry.lookup("manager"), "1")

    def test_single_declared_id_is_still_singleton(self):
        kind = ComponentKind(name="solo", instances=("only",))
        assert kind.multi_instance is False
        assert Registry([kind]).each_instance(kind)[0].id is None

    def test_resolve_all_in_catalog_order(self, registry):
        names = [i.name for i in registry.resolve(["all"])]
        assert names == [
            "base-container", "zookeeper", "registry", "builder",
            "router-internal", "router-external",
            "supervisor-1", "supervisor-2", "manager",
        ]

    def test_resolve_all_with_instance_filter(self, registry):
        names = [i.name for i in registry.resolve(["all"], instance="internal")]
        assert names == ["router-internal"]

    def test_resolve_validates_every_name(self, registry):
        with pytest.raises(UnknownComponent):
            registry.resolve(["all", "foo"])

    def test_resolve_dedups(self, registry):
        names = [i.name for i in registry.resolve(["manager", "manager"])]
        assert names == ["manager"]

    def test_resolve_preserves_argument_order(self, registry):
        names = [i.name for i in registry.resolve(["manager", "zookeeper"])]
        assert names == ["manager", "zookeeper"]


# ── Derived Names Tests ──────────────────────────────────────────

class TestDerivedNames:

    def test_multi_instance_names(self, registry, config):
        inst = ComponentInstance(registry.lookup("router"), "internal")
        assert inst.cidfile == "cidfile-internal"
        assert inst.ipfile == "ip-internal"
        assert inst.image == "aquarium/router-internal"
        assert inst.workdir(config) == "/vagrant/data/router-internal"
        assert inst.local_workdir(config) == config.local_data_dir / "router-internal"

    def test_singleton_names(self, registry, config):
        inst = ComponentInstance(registry.lookup("registry"))
        assert inst.cidfile == "cidfile"
        assert inst.ipfile == "ip"
        assert inst.hostname(config) == "registry.aquarium"

    def test_launch_options(self, registry, config):
        inst = ComponentInstance(registry.lookup("supervisor"), "1")
        options = inst.launch_options(config)
        assert options[0] == "--dns 172.17.42.1"
        assert "--privileged" in options

    def test_container_name(self, registry):
        inst = ComponentInstance(registry.lookup("router"), "external")
        assert inst.container_name("20240101") == "router-external-20240101"

    def test_hosts_file_kinds(self, registry):
        registering = {k.name for k in registry if k.registers_hostname}
        assert registering == {"zookeeper", "registry", "builder"}

    def test_only_base_image_is_never_run(self, registry):
        assert [k.name for k in registry if k.is_base_image] == ["base-container"]

    def test_custom_image_function(self):
        kind = ComponentKind(name="web", image=lambda inst: "example/web:latest")
        assert ComponentInstance(kind).image == "example/web:latest"


# ── Hook Tests ───────────────────────────────────────────────────

class TestHooks:

    def test_defaults_are_noop(self):
        hooks = Hooks()
        assert hooks.precompile is noop
        assert hooks.poststart is noop

    def _ctx(self, registry, config, name):
        return HookContext(
            instance=ComponentInstance(registry.lookup(name)),
            executor=MagicMock(), store=MagicMock(), config=config,
        )

    def test_install_ssh_key(self, registry, config):
        key = config.local_path(config.ssh_public_key)
        key.parent.mkdir(parents=True)
        key.write_text("ssh-rsa AAAA", encoding="utf-8")
        ctx = self._ctx(registry, config, "base-container")

        install_ssh_key(ctx)

        copied = config.local_data_dir / "base-container" / "id_rsa.pub"
        assert copied.read_text(encoding="utf-8") == "ssh-rsa AAAA"
        assert ctx.executor.method_calls == []

    def test_install_ssh_key_paths_with_spaces(self, registry, tmp_path):
        config = AquariumConfig.from_dict({"local_root": str(tmp_path / "my project")})
        key = config.local_path(config.ssh_public_key)
        key.parent.mkdir(parents=True)
        key.write_text("ssh-ed25519 BBBB", encoding="utf-8")

        install_ssh_key(self._ctx(registry, config, "base-container"))

        copied = config.local_data_dir / "base-container" / "id_rsa.pub"
        assert copied.read_text(encoding="utf-8") == "ssh-ed25519 BBBB"

    def test_install_ssh_key_missing(self, registry, config):
        ctx = self._ctx(registry, config, "base-container")
        with pytest.raises(MissingPrerequisiteFile, match="id_rsa.pub"):
            install_ssh_key(ctx)
        assert not (config.local_data_dir / "base-container").exists()

    def test_require_layer(self, registry, config):
        ctx = self._ctx(registry, config, "builder")
        ctx.executor.run.return_value = (True, "")

        require_layer("builder")(ctx)

        ctx.executor.run.assert_called_once_with("test -f /home/vagrant/layers/builder.tar.gz")

    def test_require_layer_missing(self, registry, config):
        ctx = self._ctx(registry, config, "supervisor")
        ctx.executor.run.return_value = (False, "")

        with pytest.raises(MissingPrerequisiteFile, match="build-layers"):
            require_layer("base")(ctx)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
