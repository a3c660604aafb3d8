import sys
import threading
import time
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync.registry import SiteRegistry


class Handle:
    def __init__(self, site_url, web_url):
        self.site_url = site_url
        self.web_url = web_url


class SiteRegistryTests(unittest.TestCase):
    def test_handles_are_memoized_by_canonical_web_url(self):
        registry = SiteRegistry(Handle)
        first = registry.get_site("http://sp/sites/a/", "http://sp/sites/a/web/")
        self.assertEqual((first.site_url, first.web_url), ("http://sp/sites/a", "http://sp/sites/a/web"))
        self.assertIs(registry.get_site("http://sp/sites/a", "http://sp/sites/a/web"), first)
        self.assertEqual(len(registry), 1)

    def test_concurrent_misses_agree_on_one_handle(self):
        built = []
        built_lock = threading.Lock()

        def factory(site_url, web_url):
            time.sleep(0.01)
            handle = Handle(site_url, web_url)
            with built_lock:
                built.append(handle)
            return handle

        registry = SiteRegistry(factory)
        barrier = threading.Barrier(16)
        results = []
        results_lock = threading.Lock()

        def lookup():
            barrier.wait()
            handle = registry.get_site("http://sp/sites/a", "http://sp/sites/a/")
            with results_lock:
                results.append(handle)

        threads = [threading.Thread(target=lookup) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(len(results), 16)
        self.assertTrue(all(handle is results[0] for handle in results))
        self.assertIn(results[0], built)
        self.assertEqual(len(registry), 1)

    def test_clear_forgets_handles(self):
        registry = SiteRegistry(Handle)
        first = registry.get_site("http://sp", "http://sp")
        registry.clear()
        self.assertIsNot(registry.get_site("http://sp", "http://sp"), first)


if __name__ == "__main__":
    unittest.main()
