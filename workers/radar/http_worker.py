#!/usr/bin/env python3
"""
HTTP Worker - Triggers ingestion passes and operator actions via HTTP
"""

import logging
import threading
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from radar.config import config
from radar.database import get_db, init_db
from radar.pipeline.ingestion_pipeline import IngestionPipeline
from radar.services.category_service import CategoryService, ClassificationConfig, ClassificationError
from radar.services.llm_service import LLMService
from radar.services.queue_service import QueueService
from radar.services.story_service import StoryService

logger = logging.getLogger(__name__)

app = FastAPI(title="News Radar Worker")
app.state.classification_config = ClassificationConfig.from_worker_config()
app.state.stop_event = threading.Event()
app.state.queue_service = QueueService()


class ClassificationConfigModel(BaseModel):
    """Classification settings as exposed over HTTP"""
    keyword_threshold: float = 3.0
    use_ai_fallback: bool = True
    combine_results: bool = True
    auto_learn_keywords: bool = True
    auto_learn_min_weight: float = 1.5


class ClassificationConfigUpdate(BaseModel):
    keyword_threshold: Optional[float] = None
    use_ai_fallback: Optional[bool] = None
    combine_results: Optional[bool] = None
    auto_learn_keywords: Optional[bool] = None
    auto_learn_min_weight: Optional[float] = None


def _category_service(db: Session, llm_service: LLMService) -> CategoryService:
    return CategoryService(db, llm_service, app.state.classification_config)


def _pipeline(db: Session) -> IngestionPipeline:
    llm_service = LLMService()
    return IngestionPipeline(db, llm_service, category_service=_category_service(db, llm_service))


@app.on_event("startup")
def on_startup():
    init_db()


@app.on_event("shutdown")
def on_shutdown():
    app.state.stop_event.set()


@app.get("/")
async def root():
    return {"service": "news-radar-worker", "source_types": config.source_types}


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run"""
    return {"status": "healthy", "service": "news-radar-worker"}


@app.get("/health/inference")
def inference_health():
    """Check that the configured model backend answers"""
    llm_service = LLMService()
    if not llm_service.check_connection():
        logger.warning(f"⚠️ Inference backend unreachable for model {llm_service.model_name}")
        raise HTTPException(
            status_code=503,
            detail={"status": "unavailable", "model": llm_service.model_name},
        )
    return {"status": "healthy", "model": llm_service.model_name}


@app.post("/ingest/{source_type}")
def ingest(source_type: str, db: Session = Depends(get_db)):
    """
    Run one ingestion pass over every active source of a type.

    Sources are processed one after another; the response carries the
    per-source summary.
    """
    if source_type not in config.source_types:
        raise HTTPException(
            status_code=400,
            detail={"status": "failed", "error": f"Unknown source type '{source_type}'"},
        )

    logger.info(f"📡 Starting {source_type} ingestion...")
    try:
        results = _pipeline(db).run_source_type(source_type, app.state.stop_event)
    except Exception as e:
        logger.error(f"❌ {source_type} ingestion failed: {str(e)}")
        raise HTTPException(status_code=500, detail={"status": "failed", "error": str(e)})

    logger.info(f"✅ {source_type} ingestion completed over {len(results)} sources")
    return {
        "status": "success",
        "source_type": source_type,
        "results": [result.to_dict() for result in results],
    }


@app.post("/queue/ingest/{source_type}")
async def queue_ingest(source_type: str):
    """Hand an ingestion pass to the Redis worker instead of running it inline"""
    if source_type not in config.source_types:
        raise HTTPException(
            status_code=400,
            detail={"status": "failed", "error": f"Unknown source type '{source_type}'"},
        )
    if not app.state.queue_service.enqueue_ingest(source_type):
        raise HTTPException(status_code=503, detail={"status": "failed", "error": "Queue unavailable"})
    return {"status": "queued", "source_type": source_type}


@app.post("/queue/items/{item_id}")
async def queue_item(item_id: int):
    if not app.state.queue_service.enqueue_item(item_id):
        raise HTTPException(status_code=503, detail={"status": "failed", "error": "Queue unavailable"})
    return {"status": "queued", "item_id": item_id}


@app.get("/ingest/{source_type}/status")
async def ingest_status(source_type: str):
    """Summary of the last queued pass, as recorded by the Redis worker"""
    status = app.state.queue_service.get_run_status(source_type)
    if status is None:
        raise HTTPException(status_code=404, detail={"status": "failed", "error": f"No recorded run for '{source_type}'"})
    return status


@app.post("/items/{item_id}/process")
def process_item(item_id: int, db: Session = Depends(get_db)):
    """Run story grouping and fusion again for one stored item"""
    try:
        fusion = _pipeline(db).reprocess_item(item_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail={"status": "failed", "item_id": item_id, "error": str(e)})

    if fusion is None:
        raise HTTPException(
            status_code=500,
            detail={"status": "failed", "item_id": item_id, "error": "Processing failed, see item error_message"},
        )
    return {"status": "success", "item_id": item_id, "fusion": fusion.to_dict()}


@app.post("/canonical/{canonical_id}/classify")
def classify_canonical(canonical_id: int, db: Session = Depends(get_db)):
    """Re-categorize stored canonical content"""
    try:
        result = _category_service(db, LLMService()).reclassify_content(canonical_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail={"status": "failed", "error": str(e)})
    except ClassificationError as e:
        raise HTTPException(status_code=502, detail={"status": "failed", "error": str(e)})

    return {"status": "success", "canonical_id": canonical_id, "classification": result.to_dict()}


@app.get("/classification/config", response_model=ClassificationConfigModel)
async def get_classification_config():
    return ClassificationConfigModel(**vars(app.state.classification_config))


@app.put("/classification/config", response_model=ClassificationConfigModel)
async def update_classification_config(update: ClassificationConfigUpdate):
    changes = update.model_dump(exclude_none=True)
    try:
        app.state.classification_config = app.state.classification_config.merge(**changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"status": "failed", "error": str(e)})
    return ClassificationConfigModel(**vars(app.state.classification_config))


@app.delete("/items/{item_id}")
def delete_item(item_id: int, db: Session = Depends(get_db)):
    """Soft delete an item; the next oldest item takes over story leadership"""
    if not StoryService(db).soft_delete_item(item_id):
        raise HTTPException(status_code=404, detail={"status": "failed", "error": f"Item {item_id} not found"})
    return {"status": "success", "item_id": item_id}


if __name__ == "__main__":
    import uvicorn
    import os

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.getenv("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
