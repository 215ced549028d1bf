"""
Tests for the node adapters, dimension probing and the prompt-from-image
text-node action.
"""

import base64
import io

import pytest
from PIL import Image

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from storyboard.errors import ProviderError
from storyboard.models.nodes import (
    ConnectedImage,
    ConnectedText,
    Edge,
    GeneratedImageMetadata,
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
    ImageAnalysis,
    ImageGenerationResponse,
    NodeInputs,
    TextGenerationResponse,
)
from storyboard.services.generation_client import GenerationClient
from storyboard.services.node_adapters import get_adapter, prompt_from_image, registered_types
from storyboard.services.workflow_document import WorkflowDocument


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingClient(GenerationClient):
    def __init__(self, probe_result=None, analysis_error=None):
        self.requests = []
        self.probe_result = probe_result
        self.analysis_error = analysis_error

    async def generate_text(self, request):
        self.requests.append(request)
        return TextGenerationResponse(text="generated text")

    async def generate_image(self, request):
        self.requests.append(request)
        return ImageGenerationResponse(image_url="https://r2/generated/1.png", key="generated/1.png")

    async def analyze_image(self, request):
        self.requests.append(request)
        if self.analysis_error is not None:
            raise self.analysis_error
        return ImageAnalysis(subject="a fox", style="watercolor", suggested_prompt="a watercolor fox")

    async def probe_image_dimensions(self, url):
        return self.probe_result


def png_data_url(width=3, height=2):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), "red").save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def inputs(images=(), texts=()):
    return NodeInputs(
        images=[ConnectedImage(id=f"img{i}", url=url) for i, url in enumerate(images)],
        texts=[ConnectedText(id=f"txt{i}", content=c) for i, c in enumerate(texts)],
    )


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class TestAdapters:
    def test_executable_types_registered(self):
        assert registered_types() == ["image", "text"]
        assert get_adapter("source") is None
        assert get_adapter("group") is None

    @pytest.mark.asyncio
    async def test_text_adapter(self):
        client = RecordingClient()
        node = TextNode(id="t", data=TextNodeData(prompt="Summarize"))

        result = await get_adapter("text")(node, inputs(["https://a.png"], ["<p>Once upon a time</p>"]), client)

        request = client.requests[0]
        assert request.prompt == "Summarize\n\nOnce upon a time"
        assert [i.url for i in request.images] == ["https://a.png"]
        assert result.output.text == "generated text"
        assert result.output.image_url is None
        assert result.patch == {"content": "generated text"}

    @pytest.mark.asyncio
    async def test_image_adapter_with_metadata(self):
        client = RecordingClient(probe_result=GeneratedImageMetadata(width=1344, height=768))
        node = ImageNode(id="i", data=ImageNodeData(prompt="A castle", model="google:4@2", aspect_ratio="16:9", quality="2K"))

        result = await get_adapter("image")(node, inputs(["https://a.png", "https://b.png"], ["at dusk"]), client)

        request = client.requests[0]
        assert request.prompt == "A castle\n\nat dusk"
        assert request.model == "google:4@2"
        assert request.source_images == ["https://a.png", "https://b.png"]
        assert (request.aspect_ratio, request.quality) == ("16:9", "2K")
        assert result.output.image_url == "https://r2/generated/1.png"
        assert result.patch["generated_image"] == "https://r2/generated/1.png"
        assert result.patch["generated_image_metadata"].width == 1344

    @pytest.mark.asyncio
    async def test_image_adapter_without_metadata(self):
        client = RecordingClient(probe_result=None)
        node = ImageNode(id="i", data=ImageNodeData(prompt="A castle"))

        result = await get_adapter("image")(node, inputs(), client)

        assert result.patch == {"generated_image": "https://r2/generated/1.png"}


# ---------------------------------------------------------------------------
# Dimension probing
# ---------------------------------------------------------------------------


class TestProbeImageDimensions:
    @pytest.mark.asyncio
    async def test_reads_data_url(self):
        metadata = await GenerationClient().probe_image_dimensions(png_data_url(5, 7))
        assert (metadata.width, metadata.height) == (5, 7)

    @pytest.mark.asyncio
    async def test_undecodable_image_is_soft_failure(self, caplog):
        url = "data:image/png;base64," + base64.b64encode(b"not an image").decode()
        assert await GenerationClient().probe_image_dimensions(url) is None
        assert "Could not read dimensions" in caplog.text

    @pytest.mark.asyncio
    async def test_malformed_data_url_is_soft_failure(self):
        assert await GenerationClient().probe_image_dimensions("data:nonsense") is None

    @pytest.mark.asyncio
    async def test_unparseable_url_is_soft_failure(self):
        assert await GenerationClient().probe_image_dimensions("https://exa mple.com/\x00x.png") is None

    @pytest.mark.asyncio
    async def test_oversized_image_is_soft_failure(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10)
        assert await GenerationClient().probe_image_dimensions(png_data_url(20, 20)) is None


# ---------------------------------------------------------------------------
# Prompt from image
# ---------------------------------------------------------------------------


def document_with_source():
    source = SourceNode(
        id="s",
        data=SourceNodeData(image=UploadedImage(
            id="u", url="https://cdn/fox.png", metadata=ImageMetadata(width=1, height=1, format="png"),
        )),
    )
    text = TextNode(id="t", data=TextNodeData(prompt=""))
    return WorkflowDocument([source, text], [Edge(id="e", source="s", target="t")])


class TestPromptFromImage:
    @pytest.mark.asyncio
    async def test_writes_suggested_prompt(self):
        document = document_with_source()
        client = RecordingClient()

        analysis = await prompt_from_image(document, "t", client)

        assert analysis.suggested_prompt == "a watercolor fox"
        assert client.requests[0].image_url == "https://cdn/fox.png"
        data = document.get_node("t").data
        assert data.content == "a watercolor fox"
        assert data.status == "completed"
        assert data.selected_action == "prompt_from_image"
        assert [i.url for i in data.connected_source_images] == ["https://cdn/fox.png"]

    @pytest.mark.asyncio
    async def test_requires_text_node_with_image(self):
        document = document_with_source()
        document.add_node(TextNode(id="lonely"))
        client = RecordingClient()

        assert await prompt_from_image(document, "s", client) is None
        assert await prompt_from_image(document, "lonely", client) is None
        assert await prompt_from_image(document, "missing", client) is None
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_failure_recorded_on_node(self):
        document = document_with_source()
        client = RecordingClient(analysis_error=ProviderError("quota exceeded"))

        with pytest.raises(ProviderError):
            await prompt_from_image(document, "t", client)

        data = document.get_node("t").data
        assert data.status == "error"
        assert data.error == "quota exceeded"
        assert data.content == ""
