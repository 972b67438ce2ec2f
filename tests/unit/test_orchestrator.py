import asyncio
from datetime import UTC, datetime, timedelta

from recurring_tasks.models import ControlSignal, TaskEvent


def test_interval_task_runs_until_max_iterations(
    store, model, ledger, fake_sleep, runtime_factory, config_factory
) -> None:
    config = config_factory(max_iterations=3)
    store.create_task(config, name="release board")

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep)
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "completed"
    assert outcome.iterations == 3
    state = store.get_task(config.task_id)
    assert state.status == "completed"
    assert state.current_iteration == 3
    assert state.next_execution_at is None
    assert fake_sleep.calls == [60.0, 60.0]
    assert [log.iteration for log in store.list_logs(config.task_id)] == [1, 2, 3]
    assert model.prompts[0] == "[Task Iteration 1] Check the release board"
    assert model.prompts[2] == "[Task Iteration 3] Check the release board"
    assert set(ledger.entries) == {f"{config.task_id}:{n}" for n in (1, 2, 3)}


def test_pause_then_resume_runs_next_iteration_immediately(
    store, model, holding_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory()
    store.create_task(config)
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        await waiter(lambda: holding_sleep.calls == [60.0])

        runtime.send_control(task_id, ControlSignal(action="pause"))
        await waiter(lambda: store.get_task(task_id).status == "paused")
        await asyncio.sleep(0.05)
        assert len(model.prompts) == 1
        assert store.get_task(task_id).next_execution_at is None

        resumed_at = datetime.now(UTC)
        runtime.send_control(task_id, ControlSignal(action="resume"))
        await waiter(lambda: store.get_task(task_id).current_iteration == 2)
        assert store.get_log(task_id, 2).created_at >= resumed_at
        await waiter(lambda: len(holding_sleep.calls) == 2)

        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert outcome.iterations == 2
    assert store.get_task(task_id).status == "stopped"
    assert holding_sleep.calls == [60.0, 60.0]


def test_stop_during_wait_ends_loop_without_another_iteration(
    store, model, holding_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory()
    store.create_task(config)

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await waiter(lambda: store.get_task(config.task_id).current_iteration == 1)
        runtime.send_control(config.task_id, ControlSignal(action="stop", message="done"))
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert outcome.iterations == 1
    assert len(store.list_logs(config.task_id)) == 1
    assert len(model.prompts) == 1
    assert store.get_task(config.task_id).next_execution_at is None


def test_stop_while_paused(store, holding_sleep, runtime_factory, config_factory, waiter) -> None:
    config = config_factory()
    store.create_task(config)
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        runtime.send_control(task_id, ControlSignal(action="pause"))
        await waiter(lambda: store.get_task(task_id).status == "paused")
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert store.get_task(task_id).status == "stopped"


def test_resume_while_running_is_ignored_and_keeps_timer(
    store, model, holding_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory()
    store.create_task(config)
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await waiter(lambda: holding_sleep.calls == [60.0])
        runtime.send_control(task_id, ControlSignal(action="resume"))
        await asyncio.sleep(0.05)
        assert store.get_task(task_id).status == "running"
        assert store.get_task(task_id).current_iteration == 1
        assert holding_sleep.calls == [60.0]
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert len(model.prompts) == 1


def test_pause_while_paused_is_ignored(
    store, holding_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory()
    store.create_task(config)
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        runtime.send_control(task_id, ControlSignal(action="pause"))
        await waiter(lambda: store.get_task(task_id).status == "paused")
        runtime.send_control(task_id, ControlSignal(action="pause"))
        await asyncio.sleep(0.05)
        assert store.get_task(task_id).status == "paused"
        runtime.send_control(task_id, ControlSignal(action="resume"))
        await waiter(lambda: store.get_task(task_id).current_iteration == 2)
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    assert asyncio.run(scenario()).iterations == 2


def test_event_mode_waits_for_events_and_folds_them_into_prompt(
    store, model, fake_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory(trigger_mode="event", interval_ms=0)
    state = store.create_task(config)
    assert state.next_execution_at is None
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep)
        runtime.start(config)
        await asyncio.sleep(0.05)
        assert model.prompts == []

        runtime.send_event(
            task_id,
            TaskEvent(
                source="github",
                event_type="push",
                payload={"ref": "main"},
                summary="2 commits pushed",
                occurred_at=datetime(2026, 1, 5, 9, 30, tzinfo=UTC),
            ),
        )
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert fake_sleep.calls == []
    prompt = model.prompts[0]
    assert prompt.startswith("[Task Iteration 1] Check the release board")
    assert "[Triggered by github push event]" in prompt
    assert "Occurred at: 2026-01-05T09:30:00+00:00" in prompt
    assert "2 commits pushed" in prompt
    assert 'Payload: {"ref": "main"}' in prompt
    assert store.get_task(task_id).next_execution_at is None


def test_event_or_interval_runs_on_whichever_arrives_first(
    store, model, holding_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory(trigger_mode="event-or-interval")
    store.create_task(config)
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        await waiter(lambda: holding_sleep.calls == [60.0])
        assert store.get_task(task_id).next_execution_at is not None

        runtime.send_event(task_id, TaskEvent(source="jira", event_type="issue_created"))
        await waiter(lambda: store.get_task(task_id).current_iteration == 2)
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.iterations == 2
    assert "[Triggered by" not in model.prompts[0]
    assert "[Triggered by jira issue_created event]" in model.prompts[1]


def test_event_mode_replays_logged_iteration_before_waiting_for_an_event(
    store, model, fake_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory(trigger_mode="event", interval_ms=0)
    store.create_task(config)
    task_id = config.task_id
    store.append_log(
        task_id,
        1,
        "cached answer",
        "success",
        {"toolCalls": [], "tokenUsage": {"inputTokens": 5, "outputTokens": 5}, "error": None},
    )

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep)
        runtime.start(config)
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        await asyncio.sleep(0.05)
        assert model.prompts == []

        runtime.send_event(task_id, TaskEvent(source="github", event_type="push", summary="FRESH"))
        await waiter(lambda: store.get_task(task_id).current_iteration == 2)
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert outcome.iterations == 2
    assert len(model.prompts) == 1
    assert model.prompts[0].startswith("[Task Iteration 2] Check the release board")
    assert "FRESH" in model.prompts[0]
    assert [log.content for log in store.list_logs(task_id)] == ["cached answer", "reply 1"]


def test_existing_log_row_is_replayed_not_re_executed(
    store, model, ledger, fake_sleep, runtime_factory, config_factory
) -> None:
    config = config_factory(max_iterations=2)
    store.create_task(config)
    store.append_log(
        config.task_id,
        1,
        "cached answer",
        "success",
        {"toolCalls": [], "tokenUsage": {"inputTokens": 5, "outputTokens": 5}, "error": None},
    )

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep)
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "completed"
    assert model.prompts == ["[Task Iteration 2] Check the release board"]
    assert set(ledger.entries) == {f"{config.task_id}:2"}
    logs = store.list_logs(config.task_id)
    assert [log.content for log in logs] == ["cached answer", "reply 1"]


def test_restart_waits_only_for_remaining_interval(
    store, model, fake_sleep, runtime_factory, config_factory
) -> None:
    config = config_factory(max_iterations=3)
    store.create_task(config)
    store.record_progress(config.task_id, 2)
    store.schedule_next(config.task_id, datetime.now(UTC) + timedelta(seconds=30))

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep)
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "completed"
    assert outcome.iterations == 3
    assert len(fake_sleep.calls) == 1
    assert 25.0 < fake_sleep.calls[0] <= 30.0
    assert model.prompts == ["[Task Iteration 3] Check the release board"]


def test_terminal_task_is_not_restarted(store, model, runtime_factory, config_factory) -> None:
    config = config_factory()
    store.create_task(config)
    store.mark_stopped(config.task_id)

    async def scenario():
        runtime = runtime_factory()
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert outcome.iterations == 0
    assert model.prompts == []


def test_paused_task_holds_after_restart_until_resumed(
    store, model, holding_sleep, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory()
    store.create_task(config)
    store.mark_paused(config.task_id)
    task_id = config.task_id

    async def scenario():
        runtime = runtime_factory(sleep=holding_sleep)
        runtime.start(config)
        await asyncio.sleep(0.05)
        assert model.prompts == []
        runtime.send_control(task_id, ControlSignal(action="resume"))
        await waiter(lambda: store.get_task(task_id).current_iteration == 1)
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.iterations == 1
    assert store.get_task(task_id).status == "stopped"


def test_consecutive_failures_escalate_to_failed(
    store, ledger, fake_sleep, scripted_model, runtime_factory, config_factory
) -> None:
    config = config_factory()
    store.create_task(config)
    failing = scripted_model([RuntimeError("upstream 503")] * 3)

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep, max_consecutive_failures=3, reasoning=failing)
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "failed"
    assert outcome.iterations == 3
    state = store.get_task(config.task_id)
    assert state.status == "failed"
    assert "upstream 503" in state.error_message
    logs = store.list_logs(config.task_id)
    assert all(log.status == "error" for log in logs)
    assert logs[0].content == "Error: upstream 503"
    assert logs[0].parts["error"] == "upstream 503"
    assert ledger.entries == {}


def test_success_resets_failure_streak(
    store, fake_sleep, scripted_model, runtime_factory, config_factory
) -> None:
    config = config_factory()
    store.create_task(config)
    flaky = scripted_model(
        [
            RuntimeError("a"),
            RuntimeError("b"),
            "recovered",
            RuntimeError("c"),
            RuntimeError("d"),
            RuntimeError("e"),
        ]
    )

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep, max_consecutive_failures=3, reasoning=flaky)
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "failed"
    assert outcome.iterations == 6


def test_slow_iteration_times_out_into_error_log(
    store, fake_sleep, scripted_model, runtime_factory, config_factory
) -> None:
    config = config_factory(max_iterations=1)
    store.create_task(config)
    slow = scripted_model(delay_s=0.5)

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep, timeout_s=0.05, reasoning=slow)
        runtime.start(config)
        return await runtime.wait(config.task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "completed"
    [log] = store.list_logs(config.task_id)
    assert log.status == "error"
    assert "timed out" in log.content


def test_failed_iteration_keeps_task_running_and_next_event_succeeds(
    store, fake_sleep, scripted_model, runtime_factory, config_factory, waiter
) -> None:
    config = config_factory(trigger_mode="event", interval_ms=0)
    store.create_task(config)
    task_id = config.task_id
    flaky = scripted_model(["first", RuntimeError("boom"), "third"])

    async def scenario():
        runtime = runtime_factory(sleep=fake_sleep, max_consecutive_failures=3, reasoning=flaky)
        runtime.start(config)
        for n in (1, 2):
            runtime.send_event(task_id, TaskEvent(source="cron", event_type=f"tick-{n}"))
            await waiter(lambda n=n: store.get_task(task_id).current_iteration == n)

        assert store.get_task(task_id).status == "running"
        failed = store.get_log(task_id, 2)
        assert failed.status == "error"
        assert failed.content == "Error: boom"
        assert failed.parts["error"] == "boom"

        runtime.send_event(task_id, TaskEvent(source="cron", event_type="tick-3"))
        await waiter(lambda: store.get_task(task_id).current_iteration == 3)
        runtime.send_control(task_id, ControlSignal(action="stop"))
        return await runtime.wait(task_id)

    outcome = asyncio.run(scenario())

    assert outcome.status == "stopped"
    assert outcome.iterations == 3
    third = store.get_log(task_id, 3)
    assert third.status == "success"
    assert third.content == "third"
    assert third.parts["error"] is None
