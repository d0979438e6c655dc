"""Celery tasks for publishing projects to Meta outside the request cycle."""

import asyncio
import logging
import uuid

from celery.signals import setup_logging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.celery_app import celery_app
from app.database import make_engine
from app.models.meta import MetaConnection
from app.models.project import Project
from app.schemas.meta import PublishAdsRequest
from app.services.currency import ExchangeRateService
from app.services.meta_api import MetaAPIService
from app.services.publisher import AdPublisher, PublishError

logger = logging.getLogger(__name__)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=logging.INFO,
    )


def _local_session_factory():
    """Fresh engine per run: every task gets its own event loop, and pooled
    asyncpg connections cannot cross loops."""
    engine = make_engine(pool_size=5, max_overflow=5)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def run_publish_ads(
    user_id: str,
    payload: dict,
    meta: MetaAPIService | None = None,
    exchange_rates: ExchangeRateService | None = None,
) -> dict:
    """Core async publish: usable from Celery or inline."""
    req = PublishAdsRequest.model_validate(payload)
    meta = meta or MetaAPIService()
    publisher = AdPublisher(meta, exchange_rates or ExchangeRateService())
    uid = uuid.UUID(user_id)

    engine, session_factory = _local_session_factory()
    try:
        async with session_factory() as db:
            result = await db.execute(
                select(Project).where(Project.id == uuid.UUID(req.project_id), Project.user_id == uid)
            )
            project = result.scalar_one_or_none()
            if not project:
                raise ValueError("Project not found")

            result = await db.execute(
                select(MetaConnection).where(MetaConnection.user_id == uid, MetaConnection.is_active == True)
            )
            conn = result.scalar_one_or_none()
            if not conn or not conn.access_token_encrypted:
                raise ValueError("No active Meta connection")
            token = meta.decrypt_token(conn.access_token_encrypted)

            try:
                outcome = await publisher.publish_ads(db, uid, token, conn, project, req)
            except PublishError as e:
                # Rejected before anything was written
                logger.warning("Publish rejected for project %s: %s", req.project_id, e.error)
                return {"success": False, **e.to_detail()}
            await db.commit()
            return outcome
    finally:
        await engine.dispose()


@celery_app.task(name="app.tasks.publish_tasks.publish_project_ads")
def publish_project_ads(user_id: str, payload: dict):
    """Celery task: publish a project's campaign, ad sets, and ads to Meta."""
    loop = asyncio.new_event_loop()
    try:
        result = loop.run_until_complete(run_publish_ads(user_id, payload))
        logger.info(
            "Publish finished for project %s: success=%s created=%s",
            payload.get("project_id"), result.get("success"), result.get("total_created"),
        )
        return result
    finally:
        loop.close()
