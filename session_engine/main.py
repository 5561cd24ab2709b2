import logging
from typing import Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .logging_config import configure_logging
from .prerequisite_flow import PrerequisiteFlow
from .routes import SessionRegistry, router
from .sandbox_evaluation import SandboxEvaluator
from .sandbox_placement import SandboxPlacer, TextGenerationPlacementAdvisor
from .session_runtime import LearningSession
from .store import ContentStore, InMemoryContentStore
from .synthesis import SynthesisDetector
from .text_generation import OpenAITextGenerator, TextGenerator
from .usefulness import UsefulnessTracker


logger = logging.getLogger(__name__)


def create_app(
    *,
    settings: Optional[Settings] = None,
    store: Optional[ContentStore] = None,
    generator: Optional[TextGenerator] = None,
    usefulness: Optional[UsefulnessTracker] = None,
) -> FastAPI:
    """Wire the default collaborators and mount the session routes.

    Without an explicit generator, an OpenAI-backed one is created only when an
    API key is configured; otherwise synthesis slots are skipped, placement
    uses the deterministic rule and mini-lessons use their fallback text.
    """
    configure_logging()
    settings = settings or get_settings()
    store = store or InMemoryContentStore()
    if generator is None and settings.openai_api_key:
        generator = OpenAITextGenerator(settings=settings)
    usefulness = usefulness or UsefulnessTracker(settings=settings)

    logger.info("Session engine starting with model: %s", settings.model)
    logger.info("OpenAI API key configured: %s", bool(settings.openai_api_key))
    logger.info("Sandbox placement mode: %s", settings.placement_mode)

    advisor = TextGenerationPlacementAdvisor(generator, settings=settings) if generator is not None else None
    evaluator = SandboxEvaluator(generator, settings=settings)

    def session_factory(session_id: str, user_id: str, project_id: str) -> LearningSession:
        return LearningSession(
            session_id=session_id,
            user_id=user_id,
            project_id=project_id,
            store=store,
            settings=settings,
            synthesis=SynthesisDetector(generator, settings=settings),
            placer=SandboxPlacer(advisor, settings=settings),
            evaluator=evaluator,
            usefulness=usefulness,
            prerequisites=PrerequisiteFlow(store, generator=generator, settings=settings, session_id=session_id),
        )

    app = FastAPI(title="Session Scheduling Engine", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.usefulness = usefulness
    app.state.session_registry = SessionRegistry(session_factory)
    app.include_router(router)

    @app.get("/healthz")
    def health() -> Dict[str, str]:
        return {
            "status": "ok",
            "placement_mode": settings.placement_mode,
            "text_generation": "enabled" if generator is not None else "disabled",
        }

    return app
