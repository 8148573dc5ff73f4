import logging
from typing import Awaitable, Callable, Optional, Tuple

from visualgen.schemas.jobs import Artifact, ItemStage, JobItem
from visualgen.schemas.visuals import GeneratedContent, VisualAsset, VisualType, WordContext
from visualgen.services.content import ContentService, has_material, template_content
from visualgen.services.images import STYLE_PROFILES, ImageService
from visualgen.services.invoker import InvocationError, ResilientInvoker
from visualgen.services.pacer import CallClass, RatePacer
from visualgen.services.records import RecordStore
from visualgen.services.storage import AssetStorage, build_asset_key
from visualgen.utils.time import utc_now

logger = logging.getLogger(__name__)

StageCallback = Callable[[JobItem], Awaitable[None]]


class ItemPipeline:
    """Content synthesis, image synthesis and asset persistence for one item.

    ``process`` always returns a terminal item. Stage failures end up in the
    item's ``error``; they are never raised to the caller.
    """

    def __init__(
        self,
        content: ContentService,
        images: ImageService,
        storage: AssetStorage,
        records: RecordStore,
        invoker: ResilientInvoker,
        pacer: RatePacer,
    ) -> None:
        self._content = content
        self._images = images
        self._storage = storage
        self._records = records
        self._invoker = invoker
        self._pacer = pacer

    async def process(
        self,
        item: JobItem,
        context: WordContext,
        on_stage: Optional[StageCallback] = None,
    ) -> JobItem:
        if item.started_at is None:
            item = item.model_copy(update={"started_at": utc_now()})
        item_label = f"{item.word_id}/{item.visual_type.value}"
        retries = item.retries
        stage = "content synthesis"
        try:
            content, fallback_used, used = await self._synthesize_content(
                item.visual_type, context, item_label
            )
            retries += used
            item = await self._advance(
                item, ItemStage.CONTENT_DONE, on_stage,
                fallback_used=fallback_used, retries=retries,
            )
            item = await self._advance(item, ItemStage.IMAGE_PENDING, on_stage)

            stage = "image synthesis"
            profile = STYLE_PROFILES[item.visual_type]
            async with self._pacer.pace(CallClass.IMAGE):
                generated = await self._invoker.invoke(
                    lambda: self._images.synthesize(content.prompt, profile),
                    label="image",
                )
            image: bytes = generated.value
            retries += generated.retries
            item = await self._advance(item, ItemStage.IMAGE_DONE, on_stage, retries=retries)
            item = await self._advance(item, ItemStage.PERSIST_PENDING, on_stage)

            stage = "asset upload"
            key = build_asset_key(context.word, item.visual_type, image)
            uploaded = await self._invoker.invoke(
                lambda: self._storage.upload(image, key), label="upload"
            )
            retries += uploaded.retries
            asset = VisualAsset(
                word_id=item.word_id,
                visual_type=item.visual_type,
                image_url=uploaded.value,
                storage_key=key,
                prompt=content.prompt,
                caption_en=content.caption_en,
                caption_ko=content.caption_ko,
            )

            stage = "asset record"
            saved = await self._invoker.invoke(
                lambda: self._records.upsert_visual_asset(item.word_id, item.visual_type, asset),
                label="upsert",
            )
            retries += saved.retries
        except InvocationError as exc:
            retries += exc.retries
            logger.warning(f"{item_label}: {stage} failed: {exc}")
            return item.advance(
                ItemStage.FAILED, error=f"{stage} failed: {exc}", retries=retries
            )

        logger.info(f"{item_label}: stored {asset.image_url}")
        return item.advance(
            ItemStage.SUCCEEDED,
            artifact=Artifact(
                image_url=asset.image_url,
                storage_key=asset.storage_key,
                prompt=asset.prompt,
                caption_en=asset.caption_en,
                caption_ko=asset.caption_ko,
            ),
            retries=retries,
        )

    async def _synthesize_content(
        self, visual_type: VisualType, context: WordContext, item_label: str
    ) -> Tuple[GeneratedContent, bool, int]:
        """Model-written content, or the local template when that is not possible.

        Returns the content, whether the template stood in for a failed model
        call, and the retries spent.
        """
        if not has_material(visual_type, context):
            return template_content(visual_type, context), False, 0
        try:
            async with self._pacer.pace(CallClass.CONTENT):
                outcome = await self._invoker.invoke(
                    lambda: self._content.synthesize(visual_type, context),
                    label="content",
                )
        except InvocationError as exc:
            logger.warning(f"{item_label}: using template content: {exc}")
            return template_content(visual_type, context), True, exc.retries
        return outcome.value, False, outcome.retries

    @staticmethod
    async def _advance(
        item: JobItem,
        stage: ItemStage,
        on_stage: Optional[StageCallback],
        **fields: object,
    ) -> JobItem:
        item = item.advance(stage, **fields)
        if on_stage is not None:
            await on_stage(item)
        return item
