import pytest

from buildxkit.driver import Driver, Feature, Info, Status
from buildxkit.manager import CachedDriver, Factory, InitConfig, Registry


class FakeDriver(Driver):
    def __init__(self, factory, cfg, client_results=("client",)):
        self._factory = factory
        self._cfg = cfg
        self.client_results = list(client_results)
        self.client_calls = 0

    def factory(self):
        return self._factory

    def bootstrap(self, logger):
        pass

    def info(self):
        return Info(Status.RUNNING)

    def version(self):
        return "v-fake"

    def stop(self, force):
        pass

    def rm(self, force, rm_volume, rm_daemon):
        pass

    def client(self):
        self.client_calls += 1
        result = self.client_results[0]
        if isinstance(result, Exception):
            raise result
        return result

    def features(self):
        return {Feature.CACHE_EXPORT: True}

    def is_moby_driver(self):
        return False

    def config(self):
        return self._cfg


class FakeFactory(Factory):
    def __init__(self, name, prio, instances=True):
        self._name = name
        self._prio = prio
        self._instances = instances

    def name(self):
        return self._name

    def usage(self):
        return self._name

    def priority(self, endpoint, api):
        return self._prio

    def new(self, cfg):
        return FakeDriver(self, cfg)

    def allows_instances(self):
        return self._instances


@pytest.fixture
def registry():
    reg = Registry()
    reg.register(FakeFactory("docker-container", 30))
    reg.register(FakeFactory("docker", 10, instances=False))
    reg.register(FakeFactory("remote", 20))
    return reg


def test_empty_registry_has_no_default():
    with pytest.raises(LookupError, match="no drivers available"):
        Registry().get_default_factory("", None, False)


def test_default_factory_lowest_priority(registry):
    assert registry.get_default_factory("", None, False).name() == "docker"


def test_default_factory_respects_instance_requirement(registry):
    assert registry.get_default_factory("", None, True).name() == "remote"


def test_get_factory_by_name(registry):
    assert registry.get_factory("remote", True).name() == "remote"


def test_get_factory_unknown(registry):
    with pytest.raises(LookupError, match='failed to find driver "nope"'):
        registry.get_factory("nope", False)


def test_get_factory_instances_not_allowed(registry):
    assert registry.get_factory("docker", False).name() == "docker"
    with pytest.raises(ValueError, match="additional instances"):
        registry.get_factory("docker", True)


def test_get_factories_sorted(registry):
    names = [f.name() for f in registry.get_factories(False)]
    assert names == sorted(names)
    assert len(names) == 3
    assert "docker" not in [f.name() for f in registry.get_factories(True)]


def test_register_replaces_same_name(registry):
    registry.register(FakeFactory("remote", 1))
    assert registry.get_default_factory("", None, False).priority("", None) == 1
    assert len(registry.get_factories(False)) == 3


def test_get_driver_uses_default_factory_and_config(registry):
    d = registry.get_driver(
        "builder0", None, "tcp://host:1234", None, None, None,
        ["--debug"], {"a.toml": b"x"}, {"k": "v"}, [], "hash",
    )
    assert isinstance(d, CachedDriver)
    assert d.factory().name() == "docker"
    cfg = d.config()
    assert cfg.name == "builder0"
    assert cfg.endpoint_addr == "tcp://host:1234"
    assert cfg.buildkit_flags == ["--debug"]
    assert cfg.files == {"a.toml": b"x"}
    assert cfg.driver_opts == {"k": "v"}
    assert cfg.context_path_hash == "hash"


def test_get_driver_with_explicit_factory(registry):
    f = registry.get_factory("remote", False)
    d = registry.get_driver("b", f, "", None, None, None, None, None, None, None, "")
    assert d.factory() is f
    assert d.config().driver_opts == {}


def test_cached_driver_calls_client_once():
    inner = FakeDriver(None, InitConfig())
    cached = CachedDriver(inner)
    assert cached.client() == "client"
    assert cached.client() == "client"
    assert inner.client_calls == 1


def test_cached_driver_caches_error():
    inner = FakeDriver(None, InitConfig(), [RuntimeError("down")])
    cached = CachedDriver(inner)
    for _ in range(2):
        with pytest.raises(RuntimeError, match="down"):
            cached.client()
    assert inner.client_calls == 1


def test_cached_driver_delegates():
    inner = FakeDriver(None, InitConfig(name="n"))
    cached = CachedDriver(inner)
    assert cached.version() == inner.version()
    assert cached.config().name == "n"
    assert cached.features() == {Feature.CACHE_EXPORT: True}
    assert cached.info().status is Status.RUNNING


def test_init_config_defaults():
    cfg = InitConfig()
    assert cfg.buildkit_flags is None
    assert cfg.files == {} and cfg.driver_opts == {} and cfg.platforms == []