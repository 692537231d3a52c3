from membella.services.webhook_cache import WebhookDedupCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_key_format():
    assert WebhookDedupCache.make_key("charge.complete", "chrg_1", "successful") == "charge.complete_chrg_1_successful"


def test_first_delivery_is_new_and_second_is_seen():
    cache = WebhookDedupCache(ttl_seconds=300, clock=FakeClock())

    assert cache.seen("k") is False
    assert cache.seen("k") is True
    assert len(cache) == 1


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = WebhookDedupCache(ttl_seconds=300, clock=clock)
    cache.seen("k")

    clock.now += 299
    assert cache.seen("k") is True

    clock.now += 1
    assert cache.seen("k") is False


def test_status_change_is_a_different_event():
    cache = WebhookDedupCache(clock=FakeClock())
    cache.seen(WebhookDedupCache.make_key("charge.complete", "chrg_1", "pending"))

    assert cache.seen(WebhookDedupCache.make_key("charge.complete", "chrg_1", "successful")) is False


def test_forget_allows_redelivery():
    cache = WebhookDedupCache(clock=FakeClock())
    cache.seen("k")
    cache.forget("k")
    cache.forget("never-added")

    assert cache.seen("k") is False


def test_cleanup_removes_only_expired_entries():
    clock = FakeClock()
    cache = WebhookDedupCache(ttl_seconds=60, clock=clock)
    cache.seen("old")
    clock.now += 30
    cache.seen("new")
    clock.now += 30

    assert cache.cleanup() == 1
    assert len(cache) == 1
    assert cache.seen("new") is True
