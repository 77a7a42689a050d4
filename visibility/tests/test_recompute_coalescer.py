import asyncio
import unittest

from visibility.services.exclusion_engine import RecomputeCoalescer


class RecomputeCoalescerTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_requests_collapse_into_one_rerun(self) -> None:
        coalescer = RecomputeCoalescer()
        started = asyncio.Event()
        release = asyncio.Event()
        runs = 0

        async def job() -> None:
            nonlocal runs
            runs += 1
            started.set()
            await release.wait()

        leader = asyncio.create_task(coalescer.run(7, job))
        await started.wait()
        followers = [asyncio.create_task(coalescer.run(7, job)) for _ in range(5)]
        await asyncio.sleep(0)
        self.assertTrue(coalescer.is_running(7))

        release.set()
        await asyncio.gather(leader, *followers)

        self.assertEqual(runs, 2)
        self.assertFalse(coalescer.is_running(7))

    async def test_requests_during_the_rerun_get_one_more_run(self) -> None:
        coalescer = RecomputeCoalescer()
        gates = [asyncio.Event(), asyncio.Event(), asyncio.Event()]
        entered = [asyncio.Event(), asyncio.Event(), asyncio.Event()]
        runs = 0

        async def job() -> None:
            nonlocal runs
            index = runs
            runs += 1
            entered[index].set()
            await gates[index].wait()

        leader = asyncio.create_task(coalescer.run("u", job))
        await entered[0].wait()
        first_wave = [asyncio.create_task(coalescer.run("u", job)) for _ in range(3)]
        await asyncio.sleep(0)
        gates[0].set()
        await entered[1].wait()
        second_wave = [asyncio.create_task(coalescer.run("u", job)) for _ in range(3)]
        await asyncio.sleep(0)
        gates[1].set()
        await asyncio.gather(*first_wave)
        self.assertFalse(any(task.done() for task in second_wave))
        gates[2].set()
        await asyncio.gather(leader, *second_wave)

        self.assertEqual(runs, 3)

    async def test_idle_request_runs_exactly_once(self) -> None:
        coalescer = RecomputeCoalescer()
        runs = 0

        async def job() -> None:
            nonlocal runs
            runs += 1

        await coalescer.run(1, job)
        await coalescer.run(1, job)

        self.assertEqual(runs, 2)

    async def test_rerun_failure_reaches_waiting_callers_only(self) -> None:
        coalescer = RecomputeCoalescer()
        started = asyncio.Event()
        release = asyncio.Event()
        runs = 0

        async def job() -> None:
            nonlocal runs
            runs += 1
            if runs == 1:
                started.set()
                await release.wait()
                return
            raise RuntimeError("storage down")

        leader = asyncio.create_task(coalescer.run(1, job))
        await started.wait()
        follower = asyncio.create_task(coalescer.run(1, job))
        await asyncio.sleep(0)
        release.set()

        await leader
        with self.assertRaises(RuntimeError):
            await follower
        self.assertFalse(coalescer.is_running(1))

    async def test_keys_do_not_block_each_other(self) -> None:
        coalescer = RecomputeCoalescer()
        release = asyncio.Event()
        ran: list[str] = []

        async def slow() -> None:
            ran.append("a")
            await release.wait()

        async def fast() -> None:
            ran.append("b")

        blocked = asyncio.create_task(coalescer.run("a", slow))
        await asyncio.sleep(0)
        await asyncio.wait_for(coalescer.run("b", fast), timeout=5)

        self.assertEqual(ran, ["a", "b"])
        self.assertFalse(blocked.done())
        release.set()
        await blocked


if __name__ == "__main__":
    unittest.main()
