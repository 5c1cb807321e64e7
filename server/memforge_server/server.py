from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

# --- Configuration & Initialization ---
# memforge.config reads the environment at import time.
load_dotenv()

from memforge import config as memforge_config
from memforge.adapter.llm_client import OpenAIChatClient
from memforge.adapter.memgraph_store import FactStore, MemgraphFactStore
from memforge.concurrency import ConcurrencyLimiter, KeyedLock
from memforge.history.ledger import MemoryHistoryLedger
from memforge.history.supersession import SupersessionWriter
from memforge.ingestion.embedder import Embedder
from memforge.ingestion.entity_resolver import EntityResolver
from memforge.ingestion.extract import EntityExtractor
from memforge.ingestion.extraction_queue import ExtractionQueue
from memforge.ingestion.extraction_worker import EntityExtractionWorker
from memforge.models import SearchOptions
from memforge.observability.tracing import configure_logging, get_metrics, init_otel
from memforge.retrieval.hybrid_search import (
    HybridSearchOrchestrator,
    HydrationError,
    InvalidSearchOptions,
)


@dataclass
class Services:
    """Everything the endpoints need, owned by the app rather than module globals."""

    store: FactStore
    orchestrator: HybridSearchOrchestrator
    ledger: MemoryHistoryLedger
    supersession: SupersessionWriter
    worker: EntityExtractionWorker
    queue: ExtractionQueue
    llm: Optional[OpenAIChatClient] = None

    async def close(self) -> None:
        await self.queue.close()
        if self.llm is not None:
            await self.llm.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()


def build_services() -> Services:
    """Wire the real Memgraph / OpenAI backed services from config."""
    store = MemgraphFactStore()
    llm = OpenAIChatClient()
    embedder = Embedder()
    ledger = MemoryHistoryLedger(store)
    resolver = EntityResolver(store, embedder, llm, locks=KeyedLock())
    worker = EntityExtractionWorker(store, EntityExtractor(llm), resolver)
    return Services(
        store=store,
        orchestrator=HybridSearchOrchestrator(
            store,
            embedder,
            llm,
            rerank_limiter=ConcurrencyLimiter(memforge_config.RERANK_CONCURRENCY),
        ),
        ledger=ledger,
        supersession=SupersessionWriter(store, ledger, embedder),
        worker=worker,
        queue=ExtractionQueue(worker),
        llm=llm,
    )


# --- Data Models ---

class SearchRequest(BaseModel):
    user_id: str
    query: str
    top_k: int = memforge_config.SEARCH_TOP_K
    mode: str = "hybrid"
    candidate_size: int = memforge_config.SEARCH_CANDIDATE_SIZE
    rerank: str = "none"
    rerank_top_n: Optional[int] = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API.  Passing *services* skips building (and closing) the real ones."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup/shutdown lifecycle."""
        configure_logging()
        init_otel()
        owned = None
        if getattr(app.state, "services", None) is None:
            owned = app.state.services = build_services()
        yield
        if owned is not None:
            await owned.close()

    app = FastAPI(title="memforge", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HydrationError)
    async def _hydration_error(request: Request, exc: HydrationError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(InvalidSearchOptions)
    async def _invalid_options(request: Request, exc: InvalidSearchOptions):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # --- Endpoints: Health ---

    @app.get("/")
    async def read_root(svc: Services = Depends(get_services)):
        verify = getattr(svc.store, "verify_connectivity", None)
        memgraph_healthy = await verify() if verify is not None else True
        return {
            "service": "memforge",
            "Memgraph Healthy": memgraph_healthy,
            "extractions_in_flight": svc.queue.in_flight,
            "metrics": get_metrics(),
        }

    # --- Endpoints: Search ---

    @app.post("/search")
    async def search(request: SearchRequest, svc: Services = Depends(get_services)):
        options = SearchOptions(
            user_id=request.user_id,
            top_k=request.top_k,
            mode=request.mode,
            candidate_size=request.candidate_size,
            rerank=request.rerank,
            rerank_top_n=request.rerank_top_n,
        )
        results = await svc.orchestrator.search(request.query, options)
        return {"results": [asdict(r) for r in results]}

    # --- Endpoints: Entity extraction ---

    @app.post("/memories/reextract")
    async def reextract(user_id: str = Query(...), svc: Services = Depends(get_services)):
        queued = await svc.queue.requeue_incomplete(user_id)
        return {"user_id": user_id, "queued": queued}

    @app.post("/memories/{memory_id}/extract", status_code=202)
    async def extract(memory_id: str, svc: Services = Depends(get_services)):
        svc.queue.submit(memory_id)
        return {"memory_id": memory_id, "status": "queued"}

    # --- Endpoints: History ---

    @app.get("/memories/{memory_id}/history")
    async def history(
        memory_id: str,
        limit: Optional[int] = Query(None, ge=1),
        svc: Services = Depends(get_services),
    ):
        records = await svc.ledger.get_history(memory_id, limit)
        return {"memory_id": memory_id, "history": [asdict(r) for r in records]}

    @app.get("/memories/{memory_id}/versions")
    async def versions(memory_id: str, svc: Services = Depends(get_services)):
        chain = await svc.supersession.version_chain(memory_id)
        return {"memory_id": memory_id, "versions": [asdict(m) for m in chain]}

    @app.delete("/history")
    async def reset_history(svc: Services = Depends(get_services)) -> dict[str, Any]:
        await svc.ledger.reset_history()
        return {"status": "reset"}

    return app


app = create_app()
