"""
Tests for the workflow executor: ordering, input propagation, fail-fast,
validation gates, cancellation and SSE streaming.
"""

import asyncio
import json

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from storyboard.errors import ProviderError
from storyboard.models.nodes import (
    Edge,
    GeneratedImageMetadata,
    GroupNode,
    ImageMetadata,
    ImageNode,
    ImageNodeData,
    SourceNode,
    SourceNodeData,
    TextNode,
    TextNodeData,
    UploadedImage,
)
from storyboard.models.workflow import (
    ExecutionProgress,
    ImageAnalysis,
    ImageGenerationResponse,
    TextGenerationResponse,
)
from storyboard.services.generation_client import GenerationClient
from storyboard.services.workflow_document import WorkflowDocument
from storyboard.services.workflow_executor import (
    CANCELLED_ERROR,
    ExecutionCancelledError,
    ExecutionInProgressError,
    ExecutionValidationError,
    NodeExecutionError,
    WorkflowExecutor,
    execute_workflow_streaming,
)


# ---------------------------------------------------------------------------
# Fake collaborator
# ---------------------------------------------------------------------------


class FakeGenerationClient(GenerationClient):
    """
    Records every call. Text replies are `text:<prompt>`, images are
    `https://img/<n>.png`. Prompts listed in `fail_on` raise ProviderError;
    when `block` is set, calls wait on it before answering.
    """

    def __init__(self, fail_on=(), block: asyncio.Event | None = None):
        self.calls = []
        self.fail_on = set(fail_on)
        self.block = block
        self.started = asyncio.Event()

    async def _enter(self, kind, request):
        self.calls.append((kind, request))
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        if getattr(request, "prompt", None) in self.fail_on:
            raise ProviderError(f"provider rejected '{request.prompt}'")

    async def generate_text(self, request):
        await self._enter("text", request)
        return TextGenerationResponse(text=f"text:{request.prompt}")

    async def generate_image(self, request):
        await self._enter("image", request)
        n = len([c for c in self.calls if c[0] == "image"])
        return ImageGenerationResponse(image_url=f"https://img/{n}.png", key=f"generated/{n}.png")

    async def analyze_image(self, request):
        await self._enter("analyze", request)
        return ImageAnalysis(subject="cat", suggested_prompt="a cat")

    async def probe_image_dimensions(self, url):
        return GeneratedImageMetadata(width=1024, height=768)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def source(node_id, url="https://cdn/source.png", parent_id=None):
    return SourceNode(
        id=node_id,
        parent_id=parent_id,
        data=SourceNodeData(
            name=node_id,
            image=UploadedImage(id="u", url=url, metadata=ImageMetadata(width=1, height=1, format="png")),
        ),
    )


def text(node_id, prompt="write", parent_id=None, **data):
    return TextNode(id=node_id, parent_id=parent_id, data=TextNodeData(name=node_id, prompt=prompt, **data))


def image(node_id, prompt="draw", parent_id=None, **data):
    return ImageNode(id=node_id, parent_id=parent_id, data=ImageNodeData(name=node_id, prompt=prompt, **data))


def edge(src, tgt):
    return Edge(id=f"{src}->{tgt}", source=src, target=tgt, target_handle="any")


def make_executor(nodes, edges=(), **client_kwargs):
    document = WorkflowDocument(nodes, list(edges))
    client = FakeGenerationClient(**client_kwargs)
    return WorkflowExecutor(document, client), document, client


def statuses(document):
    return {n.id: getattr(n.data, "status", None) for n in document.nodes if n.type in ("text", "image")}


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


class TestLinearPipeline:
    @pytest.mark.asyncio
    async def test_source_text_image_chain(self):
        """Source -> Text -> Image: the image prompt carries the generated text."""
        executor, document, client = make_executor(
            [image("I", prompt="draw"), text("T", prompt="describe"), source("S")],
            [edge("S", "T"), edge("T", "I")],
        )

        summary = await executor.run_nodes()

        assert [c[0] for c in client.calls] == ["text", "image"]
        text_request = client.calls[0][1]
        assert text_request.prompt == "describe"
        assert [i.url for i in text_request.images] == ["https://cdn/source.png"]

        image_request = client.calls[1][1]
        assert image_request.prompt == "draw\n\ntext:describe"
        assert image_request.source_images == []

        t, i = document.get_node("T"), document.get_node("I")
        assert t.data.content == "text:describe"
        assert t.data.status == "completed"
        assert [c.url for c in t.data.connected_source_images] == ["https://cdn/source.png"]
        assert i.data.generated_image == "https://img/1.png"
        assert i.data.generated_image_metadata.width == 1024
        assert [c.content for c in i.data.connected_source_texts] == ["text:describe"]

        assert summary.completed == summary.total == 2
        assert summary.outputs["T"].text == "text:describe"
        assert summary.outputs["I"].image_url == "https://img/1.png"
        assert [r.node_id for r in summary.node_results] == ["T", "I"]

    @pytest.mark.asyncio
    async def test_fresh_outputs_beat_stale_data(self):
        executor, _, client = make_executor(
            [image("A", generated_image="https://stale.png"), image("B")],
            [edge("A", "B")],
        )
        await executor.run_nodes()

        assert client.calls[1][1].source_images == ["https://img/1.png"]

    @pytest.mark.asyncio
    async def test_subset_reads_persisted_upstream(self):
        executor, document, client = make_executor(
            [text("T", content="persisted story"), image("I")],
            [edge("T", "I")],
        )
        await executor.run_nodes(["I"])

        assert [c[0] for c in client.calls] == ["image"]
        assert client.calls[0][1].prompt == "draw\n\npersisted story"
        assert document.get_node("T").data.status == "idle"

    @pytest.mark.asyncio
    async def test_image_node_settings_forwarded(self):
        executor, _, client = make_executor(
            [source("S"), image("I", model="bfl:2@2", aspect_ratio="16:9", quality="2K")],
            [edge("S", "I")],
        )
        await executor.run_nodes()

        request = client.calls[0][1]
        assert request.model == "bfl:2@2"
        assert request.aspect_ratio == "16:9"
        assert request.quality == "2K"
        assert request.source_images == ["https://cdn/source.png"]

    @pytest.mark.asyncio
    async def test_group_run_uses_children_only(self):
        executor, document, client = make_executor(
            [GroupNode(id="g"), text("a", parent_id="g"), text("b", parent_id="g"), text("outside")],
            [edge("a", "b")],
        )
        await executor.run_group("g")

        assert [c[1].prompt for c in client.calls] == ["write", "write\n\ntext:write"]
        assert document.get_node("outside").data.status == "idle"

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self):
        executor, _, _ = make_executor([text("a"), text("b"), image("c")], [edge("a", "b")])
        progress = []

        await executor.run_nodes(on_progress=progress.append)

        completed = [p.completed for p in progress]
        assert completed == sorted(completed)
        assert all(p.total == 3 for p in progress)
        assert progress[0].completed == 0
        assert progress[-1].completed == 3
        assert [p.current_node for p in progress if p.current_node] == ["a", "a", "c", "c", "b", "b"]

    @pytest.mark.asyncio
    async def test_async_event_callback(self):
        executor, _, _ = make_executor([text("a")])
        events = []

        async def on_event(event):
            events.append(event.event)

        await executor.run_nodes(on_event=on_event)

        assert events == ["workflow_start", "node_start", "node_complete", "workflow_complete"]

    @pytest.mark.asyncio
    async def test_previous_errors_cleared(self):
        executor, document, _ = make_executor([text("a", status="error", error="old failure")])
        await executor.run_nodes()

        node = document.get_node("a")
        assert node.data.status == "completed"
        assert node.data.error is None


# ---------------------------------------------------------------------------
# Failures and validation
# ---------------------------------------------------------------------------


class TestFailFast:
    @pytest.mark.asyncio
    async def test_failure_stops_downstream(self):
        executor, document, client = make_executor(
            [text("t1", prompt="one"), text("t2", prompt="two"), text("t3", prompt="three")],
            [edge("t1", "t2"), edge("t2", "t3")],
            fail_on={"two\n\ntext:one"},
        )
        events = []
        progress = []

        with pytest.raises(NodeExecutionError) as exc_info:
            await executor.run_nodes(on_event=events.append, on_progress=progress.append)

        assert exc_info.value.node_id == "t2"
        assert str(exc_info.value).startswith("Node 't2' failed: ")
        assert len(client.calls) == 2
        assert statuses(document) == {"t1": "completed", "t2": "error", "t3": "idle"}
        assert "provider rejected" in document.get_node("t2").data.error
        assert [e.event for e in events][-2:] == ["node_error", "workflow_error"]
        assert events[-1].nodes is not None
        assert not executor.is_running
        assert progress[-1] == ExecutionProgress(completed=2, total=3, current_node="t2")

    @pytest.mark.asyncio
    async def test_missing_prompts_block_run(self):
        executor, document, client = make_executor(
            [text("a", prompt="  "), image("b", prompt=""), text("c")],
        )

        with pytest.raises(ExecutionValidationError, match="Nodes without prompts: a, b"):
            await executor.run_nodes()

        assert client.calls == []
        assert document.get_node("a").data.error == "Missing prompt"
        assert document.get_node("b").data.status == "error"
        assert document.get_node("c").data.status == "idle"

    @pytest.mark.asyncio
    async def test_only_sources(self):
        executor, _, client = make_executor([source("s1"), source("s2")])
        with pytest.raises(ExecutionValidationError, match=r"only source nodes"):
            await executor.run_nodes()
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_group_messages(self):
        executor, _, _ = make_executor([GroupNode(id="empty"), GroupNode(id="g"), source("s", parent_id="g")])

        with pytest.raises(ExecutionValidationError, match="No nodes found in this group"):
            await executor.run_group("empty")
        with pytest.raises(ExecutionValidationError, match=r"No executable nodes in this group \(only source nodes\)"):
            await executor.run_group("g")

    @pytest.mark.asyncio
    async def test_empty_subset(self):
        executor, _, _ = make_executor([text("a")])
        with pytest.raises(ExecutionValidationError, match="No nodes to execute"):
            await executor.run_nodes(["missing"])

    @pytest.mark.asyncio
    async def test_cycle_still_runs_every_node(self):
        executor, _, client = make_executor(
            [text("a", prompt="a"), text("b", prompt="b")],
            [edge("a", "b"), edge("b", "a")],
        )
        summary = await executor.run_nodes()
        assert summary.completed == 2
        assert len(client.calls) == 2


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_in_flight_run(self):
        executor, document, client = make_executor(
            [text("a"), text("b")],
            [edge("a", "b")],
            block=asyncio.Event(),
        )
        run = asyncio.create_task(executor.run_nodes())
        await asyncio.wait_for(client.started.wait(), timeout=1)

        assert executor.cancel() is True
        with pytest.raises(ExecutionCancelledError):
            await asyncio.wait_for(run, timeout=1)

        assert document.get_node("a").data.error == CANCELLED_ERROR
        assert document.get_node("b").data.status == "idle"
        assert len(client.calls) == 1
        assert not executor.is_running

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self):
        executor, _, _ = make_executor([text("a")])
        assert executor.cancel() is False

    @pytest.mark.asyncio
    async def test_second_run_rejected(self):
        gate = asyncio.Event()
        executor, _, client = make_executor([text("a")], block=gate)
        run = asyncio.create_task(executor.run_nodes())
        await asyncio.wait_for(client.started.wait(), timeout=1)

        with pytest.raises(ExecutionInProgressError):
            await executor.run_nodes()

        gate.set()
        summary = await asyncio.wait_for(run, timeout=1)
        assert summary.completed == 1

        # the executor accepts a new run afterwards
        await executor.run_nodes()


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


async def collect_sse(stream):
    events = []
    async for chunk in stream:
        assert chunk.startswith("data: ")
        assert chunk.endswith("\n\n")
        events.append(json.loads(chunk[len("data: "):]))
    return events


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_success(self):
        executor, _, _ = make_executor([source("S"), image("I")], [edge("S", "I")])
        events = await collect_sse(execute_workflow_streaming(executor))

        assert [e["event"] for e in events] == [
            "workflow_start", "node_start", "node_complete", "workflow_complete",
        ]
        assert events[0]["executionOrder"] == ["I"]
        assert events[2]["output"] == {"imageUrl": "https://img/1.png"}
        assert events[2]["progress"] == {"completed": 1, "total": 1, "currentNode": "I"}
        final_image = next(n for n in events[-1]["nodes"] if n["id"] == "I")
        assert final_image["data"]["generatedImage"] == "https://img/1.png"

    @pytest.mark.asyncio
    async def test_stream_validation_error(self):
        executor, _, _ = make_executor([source("S")])
        events = await collect_sse(execute_workflow_streaming(executor))

        assert len(events) == 1
        assert events[0]["event"] == "workflow_error"
        assert "only source nodes" in events[0]["error"]

    @pytest.mark.asyncio
    async def test_stream_group(self):
        executor, _, _ = make_executor([GroupNode(id="g"), text("a", parent_id="g"), text("b")])
        events = await collect_sse(execute_workflow_streaming(executor, group_id="g"))

        assert events[0]["executionOrder"] == ["a"]
        assert events[-1]["event"] == "workflow_complete"
