import os

from dotenv import load_dotenv
from pydantic import BaseModel


current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
# Load env from backend/.env first, then fallback to specpilot/.env without overriding
load_dotenv(os.path.join(root_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


"""Runtime configuration.

Model access goes through an OpenAI-compatible endpoint:
- AI Gateway: provide AI_GATEWAY_API_KEY or VERCEL_OIDC_TOKEN.
- OpenAI: provide OPENAI_API_KEY (and optionally OPENAI_BASE_URL).
"""

MODEL_API_KEY: str | None = (
    os.getenv("AI_GATEWAY_API_KEY")
    or os.getenv("VERCEL_OIDC_TOKEN")
    or os.getenv("OPENAI_API_KEY")
)
MODEL_BASE_URL: str = (
    os.getenv("AI_GATEWAY_BASE_URL")
    or os.getenv("OPENAI_BASE_URL")
    or "https://ai-gateway.vercel.sh/v1"
)
DEFAULT_MODEL: str = os.getenv("DEFAULT_MODEL", "anthropic/claude-sonnet-4")
MODEL_MAX_TOKENS: int = int(os.getenv("MODEL_MAX_TOKENS", "16000"))
MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "1.0"))
# 0 disables extended reasoning
MODEL_REASONING_BUDGET: int = int(os.getenv("MODEL_REASONING_BUDGET", "4000"))

CHAT_MAX_STEPS: int = int(os.getenv("CHAT_MAX_STEPS", "50"))
CODEGEN_MAX_STEPS: int = int(os.getenv("CODEGEN_MAX_STEPS", "50"))

SPEC_PREFIX = "spec/"
CODE_PREFIX = "code/"

PROJECT_STORE: str = os.getenv("PROJECT_STORE", "memory")
PROJECT_STORE_NAMESPACE: str = os.getenv("PROJECT_STORE_NAMESPACE", "specpilot-projects")
PROJECT_STORE_TTL_SECONDS: int = int(os.getenv("PROJECT_STORE_TTL_SECONDS", str(30 * 24 * 3600)))

SANDBOX_TIMEOUT_MS: int = int(os.getenv("SANDBOX_TIMEOUT_MS", "2700000"))
SANDBOX_RUNTIME: str = os.getenv("SANDBOX_RUNTIME", "node22")

# Seconds to wait for a project's VM to finish warming up before deploying
VM_READY_TIMEOUT_SECONDS: float = float(os.getenv("VM_READY_TIMEOUT_SECONDS", "600"))
VM_READY_POLL_SECONDS: float = float(os.getenv("VM_READY_POLL_SECONDS", "2"))


class DeploySettings(BaseModel):
    """Knobs for the deployment pipeline.

    Defaults come from the environment; tests construct their own.
    """

    app_dir: str = os.getenv("DEPLOY_APP_DIR", "/vercel/sandbox/app")
    public_port: int = int(os.getenv("DEPLOY_PUBLIC_PORT", "3000"))
    frontend_port: int = int(os.getenv("DEPLOY_FRONTEND_PORT", "5173"))
    backend_port: int = int(os.getenv("DEPLOY_BACKEND_PORT", "3210"))
    backend_url_placeholder: str = os.getenv(
        "DEPLOY_BACKEND_URL_PLACEHOLDER", "http://127.0.0.1:3210"
    )
    backend_public_path: str = "/api"
    screen_session: str = "app"

    install_command: str = os.getenv(
        "DEPLOY_INSTALL_COMMAND",
        "(command -v pnpm >/dev/null 2>&1 || npm i -g pnpm) && pnpm install && npx convex codegen",
    )
    verify_command: str = os.getenv("DEPLOY_VERIFY_COMMAND", "pnpm run lint")
    launch_command: str = os.getenv(
        "DEPLOY_LAUNCH_COMMAND", "CONVEX_AGENT_MODE=anonymous pnpm dev"
    )

    max_fix_attempts: int = int(os.getenv("DEPLOY_MAX_FIX_ATTEMPTS", "5"))
    fix_max_steps: int = int(os.getenv("DEPLOY_FIX_MAX_STEPS", "10"))
    proceed_on_verification_failure: bool = (
        os.getenv("DEPLOY_STRICT_VERIFY", "false").lower() != "true"
    )

    health_timeout_seconds: float = float(os.getenv("DEPLOY_HEALTH_TIMEOUT_SECONDS", "60"))
    health_interval_seconds: float = float(os.getenv("DEPLOY_HEALTH_INTERVAL_SECONDS", "2"))
    health_request_timeout_seconds: float = 5.0
    health_api_path: str = "/api/"
    health_root_path: str = "/"
