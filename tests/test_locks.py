import threading
import time

from watchfs.locks import LockRegistry


class TestLockRegistry:
    def test_creates_locks_lazily(self):
        registry = LockRegistry()
        assert "git" not in registry
        with registry.hold(["git"]):
            assert "git" in registry
        assert "git" in registry

    def test_acquires_sorted_unique_names(self):
        registry = LockRegistry()
        held = registry.acquire_all(["b", "a", "b"])
        assert held == ["a", "b"]
        registry.release_all(held)

    def test_empty_names(self):
        registry = LockRegistry()
        with registry.hold([]) as held:
            assert held == []

    def test_release_unknown_name_is_ignored(self):
        LockRegistry().release_all(["missing"])

    def test_hold_excludes_concurrent_holders(self):
        registry = LockRegistry()
        guard = threading.Lock()
        active = []
        overlaps = []

        def worker():
            with registry.hold(["git"]):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(True)
                time.sleep(0.05)
                with guard:
                    active.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        assert not overlaps

    def test_opposite_request_orders_do_not_deadlock(self):
        registry = LockRegistry()

        def worker(names):
            for _ in range(200):
                with registry.hold(names):
                    pass

        threads = [
            threading.Thread(target=worker, args=(["a", "b"],), daemon=True),
            threading.Thread(target=worker, args=(["b", "a"],), daemon=True),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        assert not any(thread.is_alive() for thread in threads)

    def test_disjoint_names_do_not_block(self):
        registry = LockRegistry()
        registry.acquire_all(["a"])
        done = threading.Event()

        def worker():
            with registry.hold(["b"]):
                done.set()

        threading.Thread(target=worker, daemon=True).start()
        assert done.wait(2)
        registry.release_all(["a"])
