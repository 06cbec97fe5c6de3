from tollgate.service.saga import Saga


async def test_compensations_run_newest_first():
    undone = []
    saga = Saga("test")

    await saga.step("one", lambda: 1, compensation=lambda result: undone.append(("one", result)))

    async def async_two():
        return 2

    async def undo_two(result):
        undone.append(("two", result))

    await saga.step("two", async_two, compensation=undo_two)
    await saga.step("three", lambda: 3)

    failed = await saga.compensate()

    assert failed == []
    assert undone == [("two", 2), ("one", 1)]


async def test_failed_compensation_is_reported_and_rest_still_run(reported):
    undone = []
    saga = Saga("test", reporter=reported)

    await saga.step("one", lambda: "a", compensation=lambda result: undone.append(result))

    def explode(result):
        raise RuntimeError("cannot undo")

    await saga.step("two", lambda: "b", compensation=explode)

    failed = await saga.compensate()

    assert failed == ["two"]
    assert undone == ["a"]
    exc, context = reported.calls[0]
    assert isinstance(exc, RuntimeError)
    assert context == {"saga": "test", "step": "two"}


async def test_compensate_is_idempotent():
    calls = []
    saga = Saga("test")
    await saga.step("one", lambda: None, compensation=lambda result: calls.append(1))

    await saga.compensate()
    await saga.compensate()

    assert calls == [1]
