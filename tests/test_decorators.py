"""Tests for decorator-built flow definitions."""

import pytest

from tickflow.decorators import build_flow_definition, edge, entry, flow_definition, node
from tickflow.engine import FlowEngine
from tickflow.errors import DefinitionError
from tickflow.models import FlowRunStatus, RetryPolicy, ok


@flow_definition("review", "2")
class ReviewFlow:
    def __init__(self, threshold: int = 10):
        self.threshold = threshold

    @entry
    @node(name="Score the submission", timeout_ms=1_000)
    @edge("accept", when="is_good")
    @edge("reject")
    async def score(self, ctx):
        return ok(output=ctx.input["score"], patch={"scored": True})

    @node
    async def accept(self, ctx):
        return ok(output="accepted")

    @node("reject", retry=RetryPolicy.STANDARD)
    async def reject_submission(self, ctx):
        return ok(output="rejected")

    def is_good(self, ctx):
        return ctx.outputs["score"] >= self.threshold


def test_builds_nodes_edges_and_entry():
    definition = build_flow_definition(ReviewFlow)

    assert (definition.flow_id, definition.version) == ("review", "2")
    assert definition.entry == "score"
    assert set(definition.nodes) == {"score", "accept", "reject"}
    assert definition.nodes["score"].name == "Score the submission"
    assert definition.nodes["score"].timeout_ms == 1_000
    assert definition.nodes["reject"].retry == RetryPolicy.STANDARD
    assert [(e.from_node, e.to_node) for e in definition.edges] == [
        ("score", "accept"),
        ("score", "reject"),
    ]


def test_string_condition_binds_to_instance():
    definition = build_flow_definition(ReviewFlow, threshold=3)
    condition = definition.edges[0].when

    assert condition.__self__.threshold == 3


@pytest.mark.asyncio
async def test_decorated_flow_runs(in_memory_store, engine_settings):
    engine = FlowEngine(in_memory_store, settings=engine_settings)
    await engine.register_definition(build_flow_definition(ReviewFlow))

    good = await engine.start_run("review", "2", input={"score": 50})
    await engine.tick(good.run_id)
    run = await engine.tick(good.run_id)
    assert run.status == FlowRunStatus.COMPLETED
    assert run.outputs["accept"] == "accepted"

    bad = await engine.start_run("review", "2", input={"score": 1})
    await engine.tick(bad.run_id)
    run = await engine.tick(bad.run_id)
    assert run.outputs["reject"] == "rejected"
    assert run.state == {"scored": True}


def test_undecorated_class_is_rejected():
    class Plain:
        @entry
        async def start(self, ctx):
            return ok()

    with pytest.raises(DefinitionError, match="not decorated"):
        build_flow_definition(Plain)


def test_missing_entry_is_rejected():
    @flow_definition("no-entry", "1")
    class NoEntry:
        @node
        async def only(self, ctx):
            return ok()

    with pytest.raises(DefinitionError, match="exactly one @entry"):
        build_flow_definition(NoEntry)


def test_multiple_entries_are_rejected():
    @flow_definition("two-entries", "1")
    class TwoEntries:
        @entry
        async def one(self, ctx):
            return ok()

        @entry
        async def two(self, ctx):
            return ok()

    with pytest.raises(DefinitionError):
        build_flow_definition(TwoEntries)


def test_duplicate_node_ids_are_rejected():
    @flow_definition("dupes", "1")
    class Dupes:
        @entry
        @node("same")
        async def one(self, ctx):
            return ok()

        @node("same")
        async def two(self, ctx):
            return ok()

    with pytest.raises(DefinitionError, match="duplicate"):
        build_flow_definition(Dupes)


def test_unknown_condition_method_is_rejected():
    @flow_definition("bad-cond", "1")
    class BadCondition:
        @entry
        @edge("end", when="no_such_method")
        async def start(self, ctx):
            return ok()

        @node
        async def end(self, ctx):
            return ok()

    with pytest.raises(DefinitionError, match="no_such_method"):
        build_flow_definition(BadCondition)


def test_subclass_inherits_nodes():
    @flow_definition("child", "1")
    class Child(ReviewFlow):
        @node
        async def accept(self, ctx):
            return ok(output="accepted by child")

    definition = build_flow_definition(Child)

    assert definition.flow_id == "child"
    assert set(definition.nodes) == {"score", "accept", "reject"}
    assert definition.nodes["accept"].handler.__func__ is Child.accept
