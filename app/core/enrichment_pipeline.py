"""Enrichment Pipeline - background AI enrichment of freshly created items.

Pipeline Phases:
1. DERIVE: audio -> transcription, url -> summary, everything else as-is
2. CATEGORIZE: category + tags from the derived text (or the image itself)
3. WRITE_BACK: merge tags and update the item in one partial update

Usage:
    runner = EnrichmentRunner(store, get_ai=lambda: ai, jobs=jobs)
    item = await store.create(draft)
    runner.spawn(item)   # returns immediately, never raises into the caller
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from app.core.ai_gateway import AIProvider
from app.core.content_store import ContentStore
from app.core.enrichment_job import (
    EnrichmentJob,
    EnrichmentJobStore,
    EnrichmentPhase,
    EnrichmentStatus,
)
from app.core.media import load_blob
from app.providers.content_types import AudioItem, ContentItem, ContentType, merge_tags

logger = logging.getLogger(__name__)


async def run_enrichment(
    item: ContentItem,
    ai: AIProvider,
    store: ContentStore,
    job: EnrichmentJob | None = None,
    jobs: EnrichmentJobStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ContentItem:
    """Enrich one item and write the result back.

    Args:
        item: The item as returned by ``create`` (its tags are the merge base)
        ai: AI provider for transcription, summary and categorization
        store: Content store used for the write-back
        job: Optional job to record phase progress on
        jobs: Store the job lives in

    Returns:
        The updated item as stored.

    Raises:
        Whatever the gateways raise; the caller owns the error boundary.
    """

    def _enter(phase: EnrichmentPhase) -> None:
        if job is not None and jobs is not None:
            job.phase = phase
            jobs.update(job)

    _enter(EnrichmentPhase.DERIVE)
    transcription: str | None = None
    summary: str | None = None

    if isinstance(item, AudioItem):
        blob = await load_blob(item.content, item.mime_type, http_client)
        transcription = await ai.transcribe_audio(blob)
        analyze_type, analyze_content, analyze_mime = ContentType.TEXT, transcription, None
    elif item.type == ContentType.URL:
        summary = await ai.summarize_content(item.content, ContentType.URL)
        analyze_type, analyze_content, analyze_mime = ContentType.TEXT, summary, None
    else:
        analyze_type, analyze_content = item.type, item.content
        analyze_mime = getattr(item, "mime_type", None)

    _enter(EnrichmentPhase.CATEGORIZE)
    result = await ai.categorize_and_tag_content(analyze_type, analyze_content, analyze_mime)
    merged_tags = merge_tags(item.tags, result.tags)

    fields: dict[str, Any] = {"category": result.category, "tags": merged_tags}
    if transcription:
        fields["transcription"] = transcription
    if summary:
        fields["summary"] = summary

    _enter(EnrichmentPhase.WRITE_BACK)
    updated = await store.update(item.id, fields)

    if job is not None:
        job.category = result.category
        job.tags_added = len(merged_tags) - len(item.tags)

    logger.info(
        f"Enriched {item.type.value} item {item.id}: "
        f"category={result.category!r}, tags={list(merged_tags)}"
    )
    return updated


class EnrichmentRunner:
    """Spawns one detached enrichment task per created item.

    Each task has its own error boundary: failures are logged and recorded
    on the job, never raised into the creator. There is no retry, no queue
    and no concurrency limit.
    """

    def __init__(
        self,
        store: ContentStore,
        get_ai: Callable[[], AIProvider],
        jobs: EnrichmentJobStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._get_ai = get_ai
        self._jobs = jobs or EnrichmentJobStore()
        self._http_client = http_client
        self._tasks: set[asyncio.Task[ContentItem | None]] = set()

    @property
    def jobs(self) -> EnrichmentJobStore:
        return self._jobs

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, item: ContentItem) -> asyncio.Task[ContentItem | None]:
        """Start enrichment for ``item`` in the background and return at once."""
        job = self._jobs.create(item.id, item.type.value)
        task = asyncio.get_running_loop().create_task(
            self._guarded(item, job), name=f"enrich-{item.id}"
        )
        # Keep a strong reference until done; the loop only holds weak ones.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, item: ContentItem, job: EnrichmentJob) -> ContentItem | None:
        job.status = EnrichmentStatus.RUNNING
        self._jobs.update(job)
        try:
            updated = await run_enrichment(
                item,
                self._get_ai(),
                self._store,
                job=job,
                jobs=self._jobs,
                http_client=self._http_client,
            )
        except asyncio.CancelledError:
            job.status = EnrichmentStatus.FAILED
            job.error = "cancelled"
            self._jobs.update(job)
            raise
        except Exception as e:
            logger.exception(f"Background AI processing failed for item {item.id}: {e}")
            job.status = EnrichmentStatus.FAILED
            job.error = str(e)
            self._jobs.update(job)
            return None

        job.status = EnrichmentStatus.COMPLETED
        job.phase = EnrichmentPhase.DONE
        self._jobs.update(job)
        return updated

    async def drain(self) -> None:
        """Wait for all in-flight enrichments to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
