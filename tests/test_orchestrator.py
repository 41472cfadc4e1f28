"""
Cooking queue state machine tests.

All timing runs on the FakeScheduler from conftest. With the default
time_divisor of 180 a 3-minute recipe cooks in 1 simulated second and a
15-minute recipe in 5.
"""

import pytest

from nexcook.domain.errors import RecipeNotFound, ValidationError
from nexcook.domain.gateway import DeviceGateway
from nexcook.domain.modules import Module, ModuleRegistry
from nexcook.domain.orchestrator import CookingQueue, ItemStatus, QueueStatus
from nexcook.domain.recipes import Customization, Recipe, RecipeCatalog
from nexcook.infra.config import CookingConfig


def _module(module_id, level=100):
    return Module.from_dict({
        "id": module_id, "name": module_id, "current_level": level, "max_level": 100,
        "threshold": 10, "unit": "%", "module_type": "dispenser",
    })


def _recipe(recipe_id, module_id, minutes=3, steps=3):
    return Recipe.from_dict({
        "id": recipe_id,
        "name": recipe_id.upper(),
        "category": "Test",
        "cooking_time": minutes,
        "ingredients": [{"id": f"{recipe_id}-ing", "name": "thing", "quantity": 1, "unit": "g", "module_id": module_id}],
        "steps": [f"step {i}" for i in range(steps)],
    })


@pytest.fixture
def abc(gateway, scheduler, clock):
    """Three 1-second recipes; recipe b needs m2, which starts empty."""
    registry = ModuleRegistry([_module("m1"), _module("m2", level=0)])
    catalog = RecipeCatalog([_recipe("a", "m1"), _recipe("b", "m2"), _recipe("c", "m1")])
    queue = CookingQueue(gateway, registry, catalog, CookingConfig(), scheduler=scheduler, clock=clock)
    for recipe_id in ("a", "b", "c"):
        queue.enqueue(recipe_id)
    return queue


def _statuses(queue):
    return [item.status for item in queue.items()]


class TestEnqueue:
    def test_enqueue_returns_pending_snapshot(self, queue):
        item = queue.enqueue("tomato-soup", 2, {"salt": 80})
        assert item.status is ItemStatus.PENDING
        assert item.id.startswith("tomato-soup-")
        assert item.quantity == 2
        assert item.customization == Customization(salt=80)
        assert "water-dispenser" in item.required_modules

    def test_unknown_recipe_rejected(self, queue):
        with pytest.raises(RecipeNotFound):
            queue.enqueue("pizza")
        assert queue.items() == []

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_bad_quantity_rejected(self, queue, quantity):
        with pytest.raises(ValidationError):
            queue.enqueue("tomato-soup", quantity)

    def test_customization_is_clamped(self, queue):
        item = queue.enqueue("tomato-soup", customization={"salt": 250, "oil": -3})
        assert item.customization.salt == 100
        assert item.customization.oil == 0
        assert item.customization.water == 50

    def test_ids_are_unique(self, queue):
        ids = {queue.enqueue("tomato-soup").id for _ in range(20)}
        assert len(ids) == 20


class TestRun:
    def test_start_on_empty_queue(self, queue):
        assert queue.start() is False
        assert queue.status is QueueStatus.IDLE

    def test_fifo_with_unavailable_module_skipped(self, abc, transport, scheduler):
        assert abc.start() is True
        assert abc.status is QueueStatus.COOKING
        assert transport.lines == ["RECIPE:a;"]

        scheduler.advance(1.2)
        assert _statuses(abc)[0] is ItemStatus.COMPLETED
        assert abc.state()["currentIndex"] == 1

        scheduler.advance(2.0)
        items = abc.items()
        assert items[1].status is ItemStatus.FAILED
        assert "m2" in items[1].error
        assert items[1].unavailable_modules == ["m2"]
        assert items[2].status is ItemStatus.COOKING
        assert transport.lines == ["RECIPE:a;", "RECIPE:c;"]

        scheduler.advance(5.0)
        assert _statuses(abc) == [ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.COMPLETED]
        assert abc.status is QueueStatus.COMPLETE
        assert scheduler.pending() == []

    def test_never_more_than_one_item_cooking(self, abc, scheduler):
        seen = []
        abc.on_queue_change(lambda items, index, status: seen.append(
            sum(1 for i in items if i.status is ItemStatus.COOKING)
        ))
        abc.start()
        scheduler.advance(10.0)
        assert seen
        assert max(seen) <= 1

    def test_start_while_cooking_is_rejected(self, abc):
        assert abc.start()
        assert abc.start() is False

    def test_complete_listener_reports_outcomes(self, abc, scheduler):
        outcomes = []
        abc.on_complete(lambda recipe, ok: outcomes.append((recipe.id, ok)))
        abc.start()
        scheduler.advance(10.0)
        assert outcomes == [("a", True), ("b", False), ("c", True)]

    def test_send_failure_fails_item_and_moves_on(self, queue, transport, scheduler):
        transport.fail = True
        queue.enqueue("tomato-soup")
        queue.enqueue("spinach-soup")
        queue.start()
        items = queue.items()
        assert [i.status for i in items] == [ItemStatus.FAILED, ItemStatus.FAILED]
        assert "not open" in items[0].error
        assert queue.status is QueueStatus.COMPLETE
        assert scheduler.pending() == []

    def test_restart_cooks_every_item_again(self, abc, transport, scheduler):
        abc.start()
        scheduler.advance(10.0)
        assert abc.status is QueueStatus.COMPLETE
        abc.registry.refill("m2")
        transport.writes.clear()

        assert abc.start()
        assert _statuses(abc) == [ItemStatus.COOKING, ItemStatus.PENDING, ItemStatus.PENDING]
        assert all(item.error is None for item in abc.items())
        scheduler.advance(10.0)
        assert transport.lines == ["RECIPE:a;", "RECIPE:b;", "RECIPE:c;"]
        assert _statuses(abc) == [ItemStatus.COMPLETED] * 3
        assert abc.status is QueueStatus.COMPLETE

    def test_restart_of_finished_queue_counts_completions_again(self, queue, recipes, scheduler):
        queue.enqueue("tomato-soup")
        queue.start()
        scheduler.advance(10.0)
        assert queue.start()
        assert queue.status is QueueStatus.COOKING
        scheduler.advance(10.0)
        assert recipes.require("tomato-soup").times_cooked == 130


class TestTomatoSoup:
    def test_progress_is_monotonic_and_completion_counted_once(self, queue, recipes, scheduler):
        progress, steps, completions = [], [], []
        queue.on_progress(lambda p, s, r: (progress.append(p), steps.append(s)))
        queue.on_complete(lambda recipe, ok: completions.append((recipe.id, ok, recipe.times_cooked)))

        queue.enqueue("tomato-soup")
        queue.start()
        scheduler.advance(2.5)
        assert queue.status is QueueStatus.COOKING
        assert 40 <= queue.state()["progress"] <= 60

        scheduler.advance(3.0)
        assert progress == sorted(progress)
        assert steps == sorted(steps)
        assert progress[-1] == 100.0
        assert steps[-1] == 9
        assert completions == [("tomato-soup", True, 129)]

        scheduler.advance(10.0)
        assert recipes.require("tomato-soup").times_cooked == 129
        assert len(completions) == 1
        assert queue.status is QueueStatus.COMPLETE


class TestStop:
    def test_stop_fails_active_item_and_resets(self, queue, recipes, transport, scheduler):
        queue.enqueue("tomato-soup")
        queue.enqueue("spinach-soup")
        queue.start()
        scheduler.advance(1.0)

        assert queue.stop() is True
        items = queue.items()
        assert items[0].status is ItemStatus.FAILED
        assert items[0].error == "Cooking stopped by user"
        assert items[1].status is ItemStatus.PENDING
        state = queue.state()
        assert state["status"] == "idle"
        assert state["progress"] == 0
        assert state["currentRecipe"] is None
        assert state["currentIndex"] == 0

        scheduler.advance(30.0)
        assert transport.lines == ["RECIPE:tomato-soup;"]
        assert queue.status is QueueStatus.IDLE
        assert recipes.require("tomato-soup").times_cooked == 128

    def test_stop_during_post_completion_delay(self, abc, transport, scheduler):
        abc.start()
        scheduler.advance(1.5)
        abc.stop()
        scheduler.advance(10.0)
        assert transport.lines == ["RECIPE:a;"]
        assert _statuses(abc) == [ItemStatus.COMPLETED, ItemStatus.PENDING, ItemStatus.PENDING]

    def test_stop_when_idle_is_harmless(self, queue):
        assert queue.stop() is False
        assert queue.status is QueueStatus.IDLE


class TestEditing:
    def test_dequeue_pending(self, abc):
        b = abc.items()[1]
        assert abc.dequeue(b.id)
        assert [i.recipe.id for i in abc.items()] == ["a", "c"]

    def test_dequeue_unknown(self, abc):
        assert abc.dequeue("nope") is False

    def test_dequeue_active_stops_run(self, abc, transport, scheduler):
        abc.start()
        a = abc.items()[0]
        assert abc.dequeue(a.id)
        assert abc.status is QueueStatus.IDLE
        assert [i.recipe.id for i in abc.items()] == ["b", "c"]
        scheduler.advance(10.0)
        assert transport.lines == ["RECIPE:a;"]

    def test_dequeue_before_index_keeps_position(self, abc, scheduler):
        abc.start()
        scheduler.advance(1.2)
        assert abc.state()["currentIndex"] == 1
        a = abc.items()[0]
        abc.dequeue(a.id)
        assert abc.state()["currentIndex"] == 0

    def test_clear_stops_and_empties(self, abc, transport, scheduler):
        abc.start()
        abc.clear()
        assert abc.items() == []
        assert abc.status is QueueStatus.IDLE
        scheduler.advance(10.0)
        assert transport.lines == ["RECIPE:a;"]


class TestFailClosed:
    def test_internal_error_fails_closed(self, queue, recipes, scheduler, monkeypatch):
        def broken(recipe_id):
            raise RuntimeError("catalog corrupted")

        monkeypatch.setattr(recipes, "increment_times_cooked", broken)
        queue.enqueue("tomato-soup")
        queue.enqueue("spinach-soup")
        queue.start()
        scheduler.advance(10.0)

        state = queue.state()
        assert state["status"] == "failed"
        assert "catalog corrupted" in state["lastError"]
        assert scheduler.pending() == []

    def test_can_restart_after_failing_closed(self, queue, recipes, transport, scheduler, monkeypatch):
        original = recipes.increment_times_cooked

        def broken(recipe_id):
            raise RuntimeError("x")

        monkeypatch.setattr(recipes, "increment_times_cooked", broken)
        queue.enqueue("tomato-soup")
        queue.enqueue("spinach-soup")
        queue.start()
        scheduler.advance(10.0)
        assert queue.status is QueueStatus.FAILED

        monkeypatch.setattr(recipes, "increment_times_cooked", original)
        assert queue.start()
        assert queue.status is QueueStatus.COOKING
        assert transport.lines[-1] == "RECIPE:tomato-soup;"
        assert queue.state()["lastError"] is None


def test_same_recipe_can_be_queued_twice(transport, scheduler, clock):
    gateway = DeviceGateway(transport)
    registry = ModuleRegistry([_module("m1")])
    catalog = RecipeCatalog([_recipe("x", "m1", minutes=1, steps=1)])
    queue = CookingQueue(gateway, registry, catalog, CookingConfig(advance_delay_s=0.5), scheduler=scheduler, clock=clock)
    queue.enqueue("x", 3)
    queue.enqueue("x")
    queue.start()
    scheduler.advance(5.0)
    assert transport.lines == ["RECIPE:x;", "RECIPE:x;"]
    assert queue.status is QueueStatus.COMPLETE
