import pytest

from conftest import http_error, make_context
from visualgen.schemas.jobs import ItemStage, JobItem
from visualgen.schemas.visuals import VisualType, WordContext


def new_item(word: str = "apple", visual_type: VisualType = VisualType.CONCEPT) -> JobItem:
    return JobItem(word_id=word, visual_type=visual_type)


@pytest.mark.anyio
async def test_stages_are_reported_in_order(pipeline, records, storage):
    stages = []

    async def on_stage(item: JobItem) -> None:
        stages.append(item.stage)

    result = await pipeline.process(new_item(), make_context("apple"), on_stage=on_stage)

    assert stages == [
        ItemStage.CONTENT_DONE,
        ItemStage.IMAGE_PENDING,
        ItemStage.IMAGE_DONE,
        ItemStage.PERSIST_PENDING,
    ]
    assert result.stage == ItemStage.SUCCEEDED
    assert result.started_at is not None
    assert result.finished_at is not None
    assert result.artifact.storage_key == storage.keys[0]
    assert storage.keys[0].startswith("apple-concept-")
    asset = records.upserts[("apple", VisualType.CONCEPT)]
    assert asset.image_url == result.artifact.image_url
    assert asset.prompt == "model scene about apple"


@pytest.mark.anyio
async def test_word_without_material_uses_template_without_model_call(pipeline, content):
    context = WordContext(word_id="apple", word="apple")

    result = await pipeline.process(new_item(visual_type=VisualType.MNEMONIC), context)

    assert content.calls == []
    assert result.stage == ItemStage.SUCCEEDED
    assert result.fallback_used is False
    assert '"apple"' in result.artifact.prompt


@pytest.mark.anyio
async def test_upload_failure_fails_item_with_stage_name(pipeline, storage, records):
    async def broken_upload(image: bytes, key: str) -> str:
        raise http_error(403, "https://upload.test")

    storage.upload = broken_upload

    result = await pipeline.process(new_item(), make_context("apple"))

    assert result.stage == ItemStage.FAILED
    assert result.error.startswith("asset upload failed")
    assert "HTTP 403" in result.error
    assert records.upserts == {}


@pytest.mark.anyio
async def test_exhausted_record_upsert_counts_retries(pipeline, records):
    async def busy_upsert(word_id, visual_type, asset) -> None:
        raise http_error(503, "https://records.test")

    records.upsert_visual_asset = busy_upsert

    result = await pipeline.process(new_item(), make_context("apple"))

    assert result.stage == ItemStage.FAILED
    assert result.error.startswith("asset record failed")
    assert result.retries == 3


@pytest.mark.anyio
async def test_content_fallback_is_flagged(pipeline, content):
    content.unparseable.add("apple")

    result = await pipeline.process(new_item(visual_type=VisualType.RHYME), make_context("apple"))

    assert result.stage == ItemStage.SUCCEEDED
    assert result.fallback_used is True
    assert result.artifact.caption_en == "apple rhymes with moon"
