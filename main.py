# main.py
import logging
import os
from typing import List, Optional

import fire
import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from catalog import COMMON_LAB_TESTS
from config import load_config
from errors import DrainInProgress, PersistenceFailed, ValidationFailed
from pipeline import LabOrderPipeline, SyncScheduler, build_components, run_sync

# Configure logger
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class LabTestIn(BaseModel):
    test_name: str
    result: str = ""
    reference_range: str = "Pending"
    status: str = "pending"


class LabOrderRequest(BaseModel):
    patient_id: str
    tests: List[LabTestIn] = []
    catalog_ids: List[str] = []


def create_app(cfg=None, session=None, engine=None) -> FastAPI:
    cfg = cfg or load_config()
    client, queue = build_components(cfg, session=session, engine=engine)
    pipeline = LabOrderPipeline(client, queue)

    app = FastAPI(title="labsync")
    app.state.queue = queue
    app.state.pipeline = pipeline

    @app.get("/")
    def read_root():
        return {"labsync": "Lab-test delivery is live. POST to /visits/{visit_id}/labtests to order tests."}

    @app.post("/visits/{visit_id}/labtests")
    def order_lab_tests(visit_id: str, order: LabOrderRequest):
        logger.info(f"Lab order for visit {visit_id}, patient {order.patient_id}")
        try:
            if order.catalog_ids:
                return pipeline.order_from_catalog(visit_id, order.patient_id, order.catalog_ids)
            return pipeline.save_lab_orders(visit_id, order.patient_id, [t.model_dump() for t in order.tests])
        except ValidationFailed as e:
            raise HTTPException(status_code=422, detail=str(e))
        except PersistenceFailed as e:
            logger.error(f"Lab order for visit {visit_id} could not be stored: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/sync/drain")
    def drain():
        try:
            return queue.drain_pending().as_dict()
        except DrainInProgress as e:
            raise HTTPException(status_code=409, detail=str(e))
        except PersistenceFailed as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/sync/pending")
    def pending():
        return [e.summary() for e in queue.list_pending()]

    @app.get("/sync/abandoned")
    def abandoned():
        return [e.summary() for e in queue.list_abandoned()]

    @app.post("/sync/abandoned/{key}/requeue")
    def requeue(key: str):
        try:
            return queue.requeue(key).summary()
        except KeyError:
            raise HTTPException(status_code=404, detail=f"No entry {key}")
        except ValidationFailed as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.get("/catalog")
    def catalog():
        return [t._asdict() for t in COMMON_LAB_TESTS]

    return app


class CLI:
    """labsync command line"""

    def __init__(self, config: Optional[str] = None):
        self._config = config

    def _queue(self):
        _, queue = build_components(load_config(self._config))
        return queue

    def drain(self):
        return run_sync(self._config)

    def pending(self):
        return [e.summary() for e in self._queue().list_pending()]

    def abandoned(self):
        return [e.summary() for e in self._queue().list_abandoned()]

    def requeue(self, key: str):
        return self._queue().requeue(key).summary()

    def submit(self, visit_id, patient_id, *test_names):
        client, queue = build_components(load_config(self._config))
        tests = [{"test_name": name} for name in test_names]
        return LabOrderPipeline(client, queue).save_lab_orders(visit_id, str(patient_id), tests)

    def serve(self, host: str = "0.0.0.0", port: Optional[int] = None, schedule: bool = True):
        cfg = load_config(self._config)
        app = create_app(cfg)
        scheduler = None
        if schedule:
            scheduler = SyncScheduler(app.state.queue, cfg["scheduler"]["interval"])
            scheduler.start()
        try:
            uvicorn.run(app, host=host, port=port or int(os.environ.get("PORT", 8000)))
        finally:
            if scheduler is not None:
                scheduler.stop(timeout=5)


# CLI entrypoint using python-fire
def cli():
    fire.Fire(CLI)


# Entry point for CLI or server
if __name__ == "__main__":
    cli()
