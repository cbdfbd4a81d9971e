import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from specpilot import config
from specpilot.agent.chat import ChatAgent
from specpilot.agent.code_generator import CodeGeneratorAgent
from specpilot.agent.model import GatewayModelClient
from specpilot.api.projects import router as projects_router
from specpilot.coordinator import ProcessingCoordinator
from specpilot.deploy.pipeline import DeploymentPipeline
from specpilot.sandbox.vm import SandboxVMClient
from specpilot.store import create_store


logger = logging.getLogger("specpilot.app")


def build_coordinator() -> ProcessingCoordinator:
    """Wire the production collaborators from environment configuration."""
    settings = config.DeploySettings()
    model = GatewayModelClient()
    chat_agent = ChatAgent(model)
    code_generator = CodeGeneratorAgent(model)
    vm = SandboxVMClient(public_port=settings.public_port)
    pipeline = DeploymentPipeline(vm, code_generator=code_generator, settings=settings)
    store = create_store()
    logger.info(
        "coordinator ready model=%s store=%s", config.DEFAULT_MODEL, config.PROJECT_STORE
    )
    return ProcessingCoordinator(store, chat_agent, code_generator, pipeline, vm)


def create_app(coordinator: ProcessingCoordinator | None = None) -> FastAPI:
    app = FastAPI(title="specpilot")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.coordinator = coordinator if coordinator is not None else build_coordinator()
    app.include_router(projects_router)

    @app.get("/")
    def read_root():
        return {"Hello": "specpilot"}

    return app
