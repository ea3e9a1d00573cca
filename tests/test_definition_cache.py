from lowcode_runtime.service.definition_cache import DefinitionCache
from lowcode_runtime.storage.memory import MemoryDefinitionStore
from lowcode_runtime.storage.models import EndpointDefinition


class CountingStore(MemoryDefinitionStore):
    def __init__(self):
        super().__init__(persist=False)
        self.gets = 0
        self.resolves = 0

    def get(self, definition_id):
        self.gets += 1
        return super().get(definition_id)

    def resolve(self, path, method):
        self.resolves += 1
        return super().resolve(path, method)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _definition(**overrides):
    data = {
        "id": "ep-1",
        "path": "/double",
        "method": "POST",
        "handlerKind": "formula",
        "handlerConfig": {"expression": "request.body.n * 2"},
    }
    data.update(overrides)
    return EndpointDefinition.from_dict(data)


def test_get_serves_cached_snapshot_within_ttl():
    store = CountingStore()
    store.upsert(_definition())
    clock = FakeClock()
    cache = DefinitionCache(store, ttl_seconds=60, clock=clock)

    first = cache.get("ep-1")
    clock.now += 59
    second = cache.get("ep-1")

    assert first is second
    assert store.gets == 1


def test_get_reloads_after_ttl():
    store = CountingStore()
    store.upsert(_definition())
    clock = FakeClock()
    cache = DefinitionCache(store, ttl_seconds=60, clock=clock)

    cache.get("ep-1")
    clock.now += 61
    cache.get("ep-1")

    assert store.gets == 2


def test_negative_results_are_not_cached():
    store = CountingStore()
    cache = DefinitionCache(store)

    assert cache.get("missing") is None
    assert cache.get("missing") is None
    assert store.gets == 2
    assert len(cache) == 0


def test_invalidate_by_id_forces_fresh_load():
    store = MemoryDefinitionStore(persist=False)
    store.upsert(_definition())
    cache = DefinitionCache(store)
    store.add_mutation_hook(cache.invalidate)

    assert cache.get("ep-1").handler_config["expression"] == "request.body.n * 2"
    store.upsert(_definition(handlerConfig={"expression": "request.body.n * 3"}))

    assert cache.get("ep-1").handler_config["expression"] == "request.body.n * 3"


def test_full_invalidation_clears_everything():
    store = CountingStore()
    store.upsert(_definition())
    store.upsert(_definition(id="ep-2", path="/other"))
    cache = DefinitionCache(store)
    cache.get("ep-1")
    cache.get("ep-2")
    assert len(cache) == 2

    cache.invalidate()

    assert len(cache) == 0


def test_resolve_caches_route_and_params():
    store = CountingStore()
    store.upsert(_definition(id="orders", path="/orders/{id}", method="GET"))
    cache = DefinitionCache(store)

    definition, params = cache.resolve("/orders/42", "get")
    again, params_again = cache.resolve("/orders/42", "GET")

    assert definition.id == again.id == "orders"
    assert params == params_again == {"id": "42"}
    assert store.resolves == 1
    assert store.gets == 0


def test_resolve_is_invalidated_with_definitions():
    store = CountingStore()
    cache = DefinitionCache(store)
    store.add_mutation_hook(cache.invalidate)
    store.upsert(_definition())
    assert cache.resolve("/double", "POST") is not None

    store.upsert(_definition(enabled=False))

    assert cache.resolve("/double", "POST") is None


def test_load_racing_an_invalidation_is_not_published():
    store = MemoryDefinitionStore(persist=False)
    store.upsert(_definition())
    cache = DefinitionCache(store)
    original_get = store.get

    def get_then_invalidate(definition_id):
        snapshot = original_get(definition_id)
        cache.invalidate(definition_id)
        return snapshot

    store.get = get_then_invalidate
    assert cache.get("ep-1") is not None
    assert len(cache) == 0
