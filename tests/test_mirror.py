from packagist_mirror.breaker import CircuitBreaker
from packagist_mirror.download import DownloadPool
from packagist_mirror.errors import StoreException
from packagist_mirror.index import RootIndex
from packagist_mirror.packagist_mirror import ExitStatus, Phase, SyncOrchestrator
from packagist_mirror.progress import ProgressLogger
from packagist_mirror.registry import MirrorRegistry
from packagist_mirror.storage import FilesystemStore
from tests.base import MAIN_MIRROR, MirrorTest

MIRROR1 = "https://m1.example"
MIRROR2 = "https://m2.example"


class RecordingProgress(ProgressLogger):
    def __init__(self) -> None:
        super().__init__()
        self.phases: list[tuple[int, int]] = []

    def end(self):
        super().end()
        self.phases.append((self.total, self.current))


class PackageWriteFailingStore(FilesystemStore):
    async def write(self, path: str, data: bytes):
        if path.startswith("p/vendor/"):
            raise StoreException(f"Unable to write {path}: No space left on device")

        await super().write(path, data)


class TestSyncOrchestrator(MirrorTest):
    def publish(self, *bases: str, b_hash: str = "h2", b_packages=None):
        b_packages = b_packages or {"vendor/y": "y1"}

        self.upstream.add_repository(
            MAIN_MIRROR,
            {
                "a": ("h1", {"vendor/x": "x1"}),
                "b": (b_hash, b_packages),
            },
        )

        for base in (MAIN_MIRROR,) + bases:
            self.upstream.add_package(base, "vendor/x", "x1")
            for package, package_hash in b_packages.items():
                self.upstream.add_package(base, package, package_hash)

    async def test_first_run_and_idempotence(self):
        self.publish()

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertEqual(summary.final_phase, Phase.END)
        self.assertTrue(summary.committed)
        self.assertEqual(self.upstream.requests[0], f"{MAIN_MIRROR}/packages.json")
        self.assertCountEqual(
            self.upstream.requests,
            [
                f"{MAIN_MIRROR}/packages.json",
                f"{MAIN_MIRROR}/p/a$h1.json",
                f"{MAIN_MIRROR}/p/b$h2.json",
                f"{MAIN_MIRROR}/p/vendor/x$x1.json",
                f"{MAIN_MIRROR}/p/vendor/y$y1.json",
            ],
        )
        self.assertEqual(summary.fetched_count, 4)

        upstream_index = RootIndex.from_bytes(
            self.upstream.documents[f"{MAIN_MIRROR}/packages.json"]
        )
        self.assertEqual(self.store.read("packages.json"), upstream_index.serialize())
        self.assertFalse(self.store.exists(".packages.json"))
        self.assertFalse(self.store.exists(".init"))
        self.assertEqual(
            self.read_json("p/vendor/y$y1.json"),
            {"packages": {"vendor/y": {"dev-main": {"name": "vendor/y"}}}},
        )

        before = self.snapshot()
        self.upstream.requests.clear()

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertEqual(summary.final_phase, Phase.DONE)
        self.assertEqual(summary.message, "nothing to do")
        self.assertEqual(self.upstream.requests, [f"{MAIN_MIRROR}/packages.json"])
        self.assertEqual(summary.fetched_count, 0)
        self.assertEqual(self.snapshot(), before)

    async def test_warm_run_fetches_only_new_files(self):
        self.publish()
        await self.make_orchestrator().run()

        self.publish(b_hash="h3", b_packages={"vendor/y": "y1", "vendor/z": "z1"})
        self.upstream.requests.clear()
        progress = RecordingProgress()

        summary = await self.make_orchestrator(progress=progress).run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertEqual(
            self.upstream.requests,
            [
                f"{MAIN_MIRROR}/packages.json",
                f"{MAIN_MIRROR}/p/b$h3.json",
                f"{MAIN_MIRROR}/p/vendor/z$z1.json",
            ],
        )

        providers, package_a, package_b = summary.phases
        self.assertEqual((providers.fetched, providers.skipped), (1, 1))
        self.assertEqual((package_a.fetched, package_a.skipped), (0, 1))
        self.assertEqual((package_b.fetched, package_b.skipped), (1, 1))

        # Skipped items still advance the progress exactly once
        self.assertEqual(progress.phases, [(2, 2), (1, 1), (2, 2)])

        includes = self.read_json("packages.json")["provider-includes"]
        self.assertEqual(includes["p/b$%hash%.json"], {"sha256": "h3"})

    async def test_cold_start_refetches_stale_files(self):
        self.publish()
        await self.store.write("p/vendor/x$x1.json", b"stale")
        await self.store.write(".init", b"")

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertIn(f"{MAIN_MIRROR}/p/vendor/x$x1.json", self.upstream.requests)
        self.assertNotEqual(self.store.read("p/vendor/x$x1.json"), b"stale")
        self.assertFalse(self.store.exists(".init"))

    async def test_packages_routed_to_mirrors(self):
        self.publish(MIRROR1)

        summary = await self.make_orchestrator(mirrors=(MIRROR1,)).run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertEqual(
            self.upstream.requests_for(MIRROR1),
            [f"{MIRROR1}/p/vendor/x$x1.json", f"{MIRROR1}/p/vendor/y$y1.json"],
        )
        self.assertNotIn(f"{MAIN_MIRROR}/p/vendor/x$x1.json", self.upstream.requests)

    async def test_fallback_to_main_mirror(self):
        self.publish()
        self.upstream.add_package(MIRROR1, "vendor/x", "x1")

        summary = await self.make_orchestrator(mirrors=(MIRROR1,)).run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertEqual(
            self.upstream.requests[-2:],
            [f"{MIRROR1}/p/vendor/y$y1.json", f"{MAIN_MIRROR}/p/vendor/y$y1.json"],
        )
        self.assertTrue(self.store.exists("p/vendor/y$y1.json"))
        self.assertEqual(summary.phases[-1].failed, 1)
        self.assertEqual(summary.phases[-1].fetched, 1)
        self.assertEqual(summary.unresolved_count, 0)

    async def test_fallback_exactly_once(self):
        self.publish(MIRROR1)
        del self.upstream.documents[f"{MIRROR1}/p/vendor/y$y1.json"]
        del self.upstream.documents[f"{MAIN_MIRROR}/p/vendor/y$y1.json"]

        summary = await self.make_orchestrator(mirrors=(MIRROR1,)).run()

        self.assertEqual(summary.status, ExitStatus.INCOMPLETE)
        self.assertEqual(summary.final_phase, Phase.END)
        self.assertEqual(summary.unresolved_count, 1)
        self.assertEqual(
            [r for r in self.upstream.requests if r.endswith("vendor/y$y1.json")],
            [f"{MIRROR1}/p/vendor/y$y1.json", f"{MAIN_MIRROR}/p/vendor/y$y1.json"],
        )
        self.assertFalse(self.store.exists("p/vendor/y$y1.json"))
        # Missing packages are reported but do not hold back the root index
        self.assertTrue(summary.committed)
        self.assertTrue(self.store.exists("packages.json"))

    async def test_circuit_breaker_disables_mirror(self):
        packages = {f"vendor/p{i}": f"h{i}" for i in range(4)}
        self.upstream.add_repository(
            MAIN_MIRROR,
            {
                "a": ("h1", packages),
                "b": ("h2", {"vendor/y": "y1", "vendor/z": "z1"}),
            },
        )
        for base in (MAIN_MIRROR, MIRROR2):
            for package, package_hash in packages.items():
                self.upstream.add_package(base, package, package_hash)
            self.upstream.add_package(base, "vendor/y", "y1")
            self.upstream.add_package(base, "vendor/z", "z1")
        self.upstream.down_hosts.add("m1.example")

        registry = MirrorRegistry([MIRROR1, MIRROR2])
        breaker = CircuitBreaker(threshold=2)

        summary = await self.make_orchestrator(registry=registry, breaker=breaker).run()

        self.assertEqual(summary.status, ExitStatus.OK)
        self.assertEqual(registry.all_hosts(), (MIRROR2,))
        self.assertEqual(breaker.health[MIRROR1], 2)
        self.assertEqual(len(self.upstream.requests_for(MIRROR1)), 2)
        self.assertCountEqual(
            self.upstream.requests_for(MIRROR2),
            [
                f"{MIRROR2}/p/vendor/p1$h1.json",
                f"{MIRROR2}/p/vendor/p3$h3.json",
                f"{MIRROR2}/p/vendor/y$y1.json",
                f"{MIRROR2}/p/vendor/z$z1.json",
            ],
        )
        for package, package_hash in packages.items():
            self.assertTrue(self.store.exists(f"p/{package}${package_hash}.json"))

    async def test_unreadable_index_is_fatal(self):
        await self.store.write("packages.json", b"previous")
        self.upstream.statuses[f"{MAIN_MIRROR}/packages.json"] = 502

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.FATAL)
        self.assertEqual(summary.final_phase, Phase.ERROR)
        self.assertEqual(self.store.read("packages.json"), b"previous")
        self.assertFalse(self.store.exists(".packages.json"))

    async def test_invalid_index_is_fatal(self):
        self.upstream.documents[f"{MAIN_MIRROR}/packages.json"] = b"<html></html>"

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.FATAL)
        self.assertIn("Unable to parse", summary.message)

    async def test_interrupted_run_keeps_published_index(self):
        self.publish()
        await self.store.write("packages.json", b"previous")

        store = await PackageWriteFailingStore.create(self.root)
        orchestrator = SyncOrchestrator(
            store,
            self.source,
            MirrorRegistry(),
            DownloadPool(2),
            ProgressLogger(),
            CircuitBreaker(),
            index_retries=1,
            retry_delay=0,
        )

        summary = await orchestrator.run()

        self.assertEqual(summary.status, ExitStatus.FATAL)
        self.assertEqual(summary.final_phase, Phase.ERROR)
        self.assertFalse(summary.committed)
        self.assertEqual(self.store.read("packages.json"), b"previous")
        self.assertTrue(self.store.exists(".packages.json"))
        self.assertTrue(self.store.exists(".init"))

    async def test_provider_failure_blocks_commit(self):
        self.publish()
        self.upstream.statuses[f"{MAIN_MIRROR}/p/b$h2.json"] = 500

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.INCOMPLETE)
        self.assertEqual(summary.final_phase, Phase.END)
        self.assertFalse(summary.committed)
        self.assertFalse(self.store.exists("packages.json"))
        self.assertTrue(self.store.exists(".packages.json"))
        self.assertTrue(self.store.exists("p/vendor/x$x1.json"))
        self.assertFalse(self.store.exists("p/vendor/y$y1.json"))

    async def test_all_providers_up_to_date(self):
        self.publish()
        await self.make_orchestrator().run()

        index_uri = f"{MAIN_MIRROR}/packages.json"
        index = RootIndex.from_bytes(self.upstream.documents[index_uri])
        index.data["notify-batch"] = "/downloads/"
        self.upstream.documents[index_uri] = index.serialize()
        self.upstream.requests.clear()

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.final_phase, Phase.DONE)
        self.assertEqual(summary.message, "all providers already up to date")
        self.assertEqual(self.upstream.requests, [index_uri])

    async def test_unrequestable_package_name(self):
        self.upstream.add_repository(
            MAIN_MIRROR, {"a": ("h1", {"vendor/x\x01": "x1", "vendor/ok": "o1"})}
        )
        self.upstream.add_package(MAIN_MIRROR, "vendor/ok", "o1")

        summary = await self.make_orchestrator().run()

        self.assertEqual(summary.status, ExitStatus.INCOMPLETE)
        self.assertEqual(summary.final_phase, Phase.END)
        self.assertEqual(summary.unresolved_count, 1)
        self.assertTrue(self.store.exists("p/vendor/ok$o1.json"))
        self.assertTrue(summary.committed)

    async def test_fallback_failures_count_against_host(self):
        self.upstream.add_repository(
            MAIN_MIRROR,
            {
                "a": ("h1", {"vendor/p0": "h0"}),
                "b": ("h2", {"vendor/q0": "h0"}),
            },
        )
        registry = MirrorRegistry([MAIN_MIRROR])
        breaker = CircuitBreaker(threshold=3)

        summary = await self.make_orchestrator(registry=registry, breaker=breaker).run()

        self.assertEqual(summary.status, ExitStatus.INCOMPLETE)
        self.assertEqual(breaker.health[MAIN_MIRROR], 4)
        self.assertNotIn(MAIN_MIRROR, registry)
