"""本地开发栈的固定服务清单。"""

from __future__ import annotations

from pathlib import Path

from devstack.services.preflight import RequiredTool
from devstack.services.service_launcher import ServiceDescriptor

REQUIRED_ENV_VARS: tuple[str, ...] = (
    "STRIPE_PRIVATE_KEY",
    "RESEND_API_KEY",
    "RESEND_FROM_EMAIL",
    "TEST_EMAIL",
)

REQUIRED_TOOLS: tuple[RequiredTool, ...] = (
    RequiredTool(command="temporal", product="Temporal CLI", install_url="https://docs.temporal.io/cli#install"),
    RequiredTool(command="go", product="Go", install_url="https://golang.org/dl/"),
    RequiredTool(command="npm", product="Node.js (npm)", install_url="https://nodejs.org/"),
)

TEMPORAL_GRPC_PORT = 7233
TEMPORAL_UI_PORT = 8233
API_PORT = 3001
FRONTEND_PORT = 8080

RECLAIMED_PORTS: tuple[int, ...] = (TEMPORAL_GRPC_PORT, TEMPORAL_UI_PORT, API_PORT, FRONTEND_PORT)

FRONTEND_DIR_NAME = "frontend"


def build_services(project_dir: Path) -> list[ServiceDescriptor]:
    """按启动顺序返回服务定义。"""

    return [
        ServiceDescriptor(
            name="Temporal",
            command=("temporal", "server", "start-dev"),
            cwd=project_dir,
            ready_port=TEMPORAL_GRPC_PORT,
            startup_delay=3.0,
            url=f"http://localhost:{TEMPORAL_UI_PORT}",
        ),
        ServiceDescriptor(
            name="Worker",
            command=("go", "run", "worker/main.go"),
            cwd=project_dir,
            startup_delay=2.0,
        ),
        ServiceDescriptor(
            name="API",
            command=("go", "run", "api/main.go"),
            cwd=project_dir,
            ready_port=API_PORT,
            url=f"http://localhost:{API_PORT}",
        ),
        ServiceDescriptor(
            name="Frontend",
            command=("npm", "start"),
            cwd=project_dir / FRONTEND_DIR_NAME,
            install_command=("npm", "install"),
            install_marker="node_modules",
            ready_port=FRONTEND_PORT,
            url=f"http://localhost:{FRONTEND_PORT}",
        ),
    ]
