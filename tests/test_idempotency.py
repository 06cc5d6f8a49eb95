import redis

from leadsms.idempotency import SEEN_TTL_SECONDS, IdempotencyStore


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.keys = {}

    def set(self, key, value, nx=False, ex=None):
        if self.fail:
            raise redis.ConnectionError("redis down")
        if nx and key in self.keys:
            return None
        self.keys[key] = (value, ex)
        return True


def test_memory_store_marks_first_sighting():
    store = IdempotencyStore(None)
    assert store.seen("SM1") is False
    assert store.seen("SM1") is True
    assert store.seen("SM2") is False


def test_missing_sid_is_never_a_duplicate():
    store = IdempotencyStore(None)
    assert store.seen(None) is False
    assert store.seen("") is False
    assert store.seen(None) is False


def test_redis_set_nx_with_ttl():
    store = IdempotencyStore(None)
    store.r = FakeRedis()

    assert store.seen("SM1") is False
    assert store.seen("SM1") is True
    assert store.r.keys["inbound:msg:SM1"] == ("1", SEEN_TTL_SECONDS)


def test_redis_errors_fall_back_to_memory():
    store = IdempotencyStore(None)
    store.r = FakeRedis(fail=True)

    assert store.seen("SM1") is False
    assert store.seen("SM1") is True


def test_memory_store_evicts_oldest():
    store = IdempotencyStore(None, max_mem_size=10)
    for i in range(10):
        store.seen(f"SM{i}")
    store.seen("SM-new")

    assert store.seen("SM-new") is True
    assert store.seen("SM9") is True
    assert store.seen("SM0") is False
