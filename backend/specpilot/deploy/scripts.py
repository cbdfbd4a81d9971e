"""Shell snippets the deployment pipeline sends to the VM."""

import posixpath
import shlex

from specpilot.config import CODE_PREFIX, DeploySettings
from specpilot.vfs import VirtualFileSystem


NGINX_SITE_PATH = "/etc/nginx/conf.d/app.conf"

NGINX_TEMPLATE = """server {{
    listen {public_port} default_server;
    server_name _;

    proxy_http_version 1.1;
    proxy_set_header Upgrade $http_upgrade;
    proxy_set_header Connection "upgrade";
    proxy_set_header Host $host;
    proxy_set_header X-Real-IP $remote_addr;
    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
    proxy_set_header X-Forwarded-Proto $scheme;
    proxy_read_timeout 86400s;
    proxy_send_timeout 86400s;

    location /api/ {{
        proxy_pass http://127.0.0.1:{backend_port}/;
    }}

    location / {{
        proxy_pass http://127.0.0.1:{frontend_port};
    }}
}}
"""


def is_env_file(path: str) -> bool:
    return posixpath.basename(path).startswith(".env")


def rewrite_env_content(content: str, placeholder: str, backend_url: str) -> str:
    return content.replace(placeholder, backend_url)


def _heredoc_delimiter(content: str) -> str:
    lines = set(content.split("\n"))
    delimiter = "EOF"
    n = 0
    while delimiter in lines:
        n += 1
        delimiter = f"EOF_{n}"
    return delimiter


def _write_file_lines(quoted_path: str, content: str) -> list[str]:
    """Script lines that write ``content`` to the path byte for byte.

    A heredoc always ends its body with a newline, so one trailing newline
    is taken from the content, and content without one is truncated by a
    byte after writing.
    """
    if not content:
        return [f": > {quoted_path}"]
    if content.endswith("\n"):
        body, trim = content[:-1], False
    else:
        body, trim = content, True
    delimiter = _heredoc_delimiter(body)
    lines = [f"cat > {quoted_path} << '{delimiter}'", body, delimiter]
    if trim:
        lines.append(f"truncate -s -1 {quoted_path}")
    return lines


def build_upload_script(
    vfs: VirtualFileSystem, settings: DeploySettings, public_url: str
) -> tuple[str, int]:
    """One bash script that recreates every ``code/`` file under the app dir.

    Returns the script and the number of files it writes.
    """
    backend_url = public_url.rstrip("/") + settings.backend_public_path
    app_dir = settings.app_dir.rstrip("/")
    lines = ["#!/bin/bash", "set -e", f"mkdir -p {shlex.quote(app_dir)}"]
    count = 0
    for path in sorted(vfs.list_files_under(CODE_PREFIX)):
        content = vfs.read_file(path) or ""
        target = path[len(CODE_PREFIX):]
        if not target:
            continue
        if is_env_file(target):
            content = rewrite_env_content(
                content, settings.backend_url_placeholder, backend_url
            )
        directory = posixpath.dirname(target)
        if directory:
            lines.append(f"mkdir -p {shlex.quote(f'{app_dir}/{directory}')}")
        quoted = shlex.quote(f"{app_dir}/{target}")
        lines.extend(_write_file_lines(quoted, content))
        count += 1
    return "\n".join(lines) + "\n", count


def build_reset_command(settings: DeploySettings) -> str:
    # Keeps node_modules across redeploys
    app_dir = shlex.quote(settings.app_dir.rstrip("/"))
    session = shlex.quote(settings.screen_session)
    return (
        f"screen -S {session} -X quit >/dev/null 2>&1 || true; "
        # [p] keeps the pattern from matching this shell's own command line
        "pkill -f '[p]npm dev' || true; "
        f"mkdir -p {app_dir} && find {app_dir} -mindepth 1 -maxdepth 1 ! -name node_modules -exec rm -rf {{}} +"
    )


def build_proxy_command(settings: DeploySettings) -> str:
    config_text = NGINX_TEMPLATE.format(
        public_port=settings.public_port,
        frontend_port=settings.frontend_port,
        backend_port=settings.backend_port,
    )
    return (
        "(command -v nginx >/dev/null 2>&1 || "
        "(apt-get update && apt-get install --yes nginx screen) || "
        "dnf install -y nginx screen)\n"
        f"mkdir -p {posixpath.dirname(NGINX_SITE_PATH)}\n"
        f"cat > {NGINX_SITE_PATH} << 'EOF'\n{config_text}EOF\n"
        "nginx -t && (nginx -s reload 2>/dev/null || nginx)\n"
    )


def build_launch_command(settings: DeploySettings) -> str:
    app_dir = shlex.quote(settings.app_dir.rstrip("/"))
    session = shlex.quote(settings.screen_session)
    inner = shlex.quote(f"cd {settings.app_dir.rstrip('/')} && {settings.launch_command}")
    # Detached screen session so the app outlives this exec call
    return (
        f"cd {app_dir} && screen -S {session} -X quit >/dev/null 2>&1; "
        f"screen -dmS {session} bash -lc {inner}"
    )


def in_app_dir(settings: DeploySettings, command: str) -> str:
    return f"cd {shlex.quote(settings.app_dir.rstrip('/'))} && {command}"
