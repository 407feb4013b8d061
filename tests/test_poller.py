import asyncio

import pytest

from barman_exporter import BackupPoller, CycleStats


def make_poller(config, client, registry, logger):
    return BackupPoller(config, client, registry, logger, CycleStats())


@pytest.mark.asyncio
async def test_cycle_checks_every_listed_target(config, registry, logger, fake_client_class):
    client = fake_client_class(listing="a\nb\nc\n")
    poller = make_poller(config, client, registry, logger)

    results = await poller.run_cycle()

    assert client.checked == ["a", "b", "c"]
    assert results == {"a": 0, "b": 0, "c": 0}
    assert registry.snapshot() == {"a": 0, "b": 0, "c": 0}


@pytest.mark.asyncio
async def test_failed_check_sets_one(config, registry, logger, fake_client_class):
    client = fake_client_class(listing="main\nreplica\n", failing={"replica"})
    poller = make_poller(config, client, registry, logger)

    await poller.run_cycle()

    assert ("set", "main", 0) in registry.calls
    assert ("set", "replica", 1) in registry.calls
    assert registry.snapshot() == {"main": 0, "replica": 1}
    assert poller.stats.check_successes == 1
    assert poller.stats.check_failures == 1


@pytest.mark.asyncio
async def test_empty_listing_leaves_registry_unchanged(config, registry, logger, fake_client_class):
    registry.set("old", 1)
    registry.calls.clear()
    client = fake_client_class(listing="")
    poller = make_poller(config, client, registry, logger)

    results = await poller.run_cycle()

    assert results == {}
    assert client.checked == []
    assert registry.calls == []
    assert registry.snapshot() == {"old": 1}


@pytest.mark.asyncio
async def test_failed_listing_checks_nothing_and_keeps_stale_entries(
    config, registry, logger, fake_client_class
):
    registry.set("main", 0)
    registry.calls.clear()
    client = fake_client_class(listing="main\n", list_success=False)
    poller = make_poller(config, client, registry, logger)

    results = await poller.run_cycle()

    assert results == {}
    assert client.checked == []
    assert registry.calls == []
    assert registry.snapshot() == {"main": 0}
    assert poller.stats.list_failures == 1
    assert poller.stats.consecutive_list_failures == 1


@pytest.mark.asyncio
async def test_listing_recovery_resets_failure_streak(config, registry, logger, fake_client_class):
    client = fake_client_class(listing="main\n", list_success=False)
    poller = make_poller(config, client, registry, logger)
    await poller.run_cycle()
    await poller.run_cycle()
    assert poller.stats.consecutive_list_failures == 2

    client.list_success = True
    await poller.run_cycle()

    assert poller.stats.consecutive_list_failures == 0
    assert poller.stats.list_failures == 2
    assert poller.stats.cycles == 3


@pytest.mark.asyncio
async def test_identical_cycles_are_idempotent(config, registry, logger, fake_client_class):
    client = fake_client_class(listing="main\nreplica\n", failing={"replica"})
    poller = make_poller(config, client, registry, logger)

    await poller.run_cycle()
    first = registry.snapshot()
    await poller.run_cycle()

    assert registry.snapshot() == first == {"main": 0, "replica": 1}


@pytest.mark.asyncio
async def test_refresh_resets_before_first_set(config, registry, logger, fake_client_class):
    registry.set("removed", 0)
    registry.calls.clear()
    client = fake_client_class(listing="main\n")
    poller = make_poller(config, client, registry, logger)

    await poller.refresh(reason="test")

    assert registry.calls == [("reset",), ("set", "main", 0)]
    assert registry.snapshot() == {"main": 0}
    assert poller.stats.resets == 1


@pytest.mark.asyncio
async def test_parallel_checks_run_concurrently(config, registry, logger, fake_client_class):
    config.parallel_check = True
    targets = [f"server-{i}" for i in range(config.max_workers)]
    client = fake_client_class(listing="".join(f"{t}\n" for t in targets), check_delay=0.2)
    poller = make_poller(config, client, registry, logger)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await poller.run_cycle()
    elapsed = loop.time() - started

    assert sorted(client.checked) == targets
    assert registry.snapshot() == {t: 0 for t in targets}
    assert elapsed < 0.2 * len(targets)


@pytest.mark.asyncio
async def test_parallel_checks_respect_max_workers(make_config, registry, logger, fake_client_class, tmp_path):
    settings = tmp_path / "settings.yml"
    settings.write_text("exporter:\n    collection:\n        max_workers: 2\n", encoding="utf-8")
    config = make_config(config_path=settings)
    config.parallel_check = True

    client = fake_client_class(listing="a\nb\nc\nd\n")
    poller = make_poller(config, client, registry, logger)
    running = 0
    peak = 0
    original_check = client.check

    async def tracking_check(target):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        try:
            return await original_check(target)
        finally:
            running -= 1

    client.check = tracking_check
    await poller.run_cycle()

    assert peak == 2
    assert registry.snapshot() == {"a": 0, "b": 0, "c": 0, "d": 0}


@pytest.mark.asyncio
async def test_refresh_waits_for_in_flight_cycle(config, registry, logger, fake_client_class):
    config.parallel_check = True
    client = fake_client_class(listing="main\nreplica\n", check_delay=0.1)
    poller = make_poller(config, client, registry, logger)

    cycle = asyncio.create_task(poller.run_cycle())
    await asyncio.sleep(0.02)
    await poller.refresh(reason="test")
    await cycle

    reset_at = registry.calls.index(("reset",))
    stale_writes = [call for call in registry.calls[:reset_at] if call[0] == "set"]
    fresh_writes = [call for call in registry.calls[reset_at + 1:] if call[0] == "set"]
    assert len(stale_writes) == 2
    assert sorted(fresh_writes) == [("set", "main", 0), ("set", "replica", 0)]


@pytest.mark.asyncio
async def test_run_repeats_until_stopped(config, registry, logger, fake_client_class):
    config.scrape_interval = 0.01
    client = fake_client_class(listing="main\n")
    poller = make_poller(config, client, registry, logger)
    stop = asyncio.Event()

    task = asyncio.create_task(poller.run(stop))
    for _ in range(200):
        if client.list_calls >= 3:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert client.list_calls >= 3
    assert registry.snapshot() == {"main": 0}


@pytest.mark.asyncio
async def test_run_survives_cycle_errors(config, registry, logger, fake_client_class):
    config.scrape_interval = 0.01
    client = fake_client_class(listing="main\n")
    calls = 0

    async def flaky_list_servers():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("unexpected")
        return await fake_client_class.list_servers(client)

    client.list_servers = flaky_list_servers
    poller = make_poller(config, client, registry, logger)
    stop = asyncio.Event()

    task = asyncio.create_task(poller.run(stop))
    for _ in range(200):
        if registry.snapshot():
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert calls >= 2
    assert registry.snapshot() == {"main": 0}


@pytest.mark.asyncio
async def test_run_stops_during_interval_sleep(config, registry, logger, fake_client_class):
    config.scrape_interval = 3600
    client = fake_client_class(listing="")
    poller = make_poller(config, client, registry, logger)
    stop = asyncio.Event()

    task = asyncio.create_task(poller.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert client.list_calls == 1
