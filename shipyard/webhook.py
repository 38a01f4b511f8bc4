"""
GitHub push webhook: redeploys the matching project on every push to its branch.
"""

import asyncio
import functools
import hashlib
import hmac
import json
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as PayloadError

from .context import DeployContext
from .errors import ProjectBusy, ProjectNotFound
from .metadata import ProjectRecord
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3003
DEFAULT_PATH = "/webhook"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-Hub-Signature-256, X-GitHub-Event",
}


class PushRepository(BaseModel):
    clone_url: Optional[str] = None
    html_url: Optional[str] = None
    full_name: Optional[str] = None


class PushPayload(BaseModel):
    ref: str = ""
    after: Optional[str] = None
    repository: PushRepository

    @property
    def branch(self) -> Optional[str]:
        """Pushed branch; a push without a ref counts as main. None for tags."""
        if not self.ref:
            return "main"
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else None

    def repo_urls(self) -> List[str]:
        return [url for url in (self.repository.clone_url, self.repository.html_url) if url]


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check an X-Hub-Signature-256 header (sha256=<hex HMAC of the raw body>)."""
    if not signature or not signature.startswith("sha256="):
        return False
    try:
        received = signature.encode("latin-1")
    except UnicodeEncodeError:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), received)


def _reply(status_code: int, success: bool, message: str, **extra) -> JSONResponse:
    return JSONResponse({"success": success, "message": message, **extra}, status_code=status_code)


def find_projects(ctx: DeployContext, urls: List[str]) -> List[ProjectRecord]:
    found: List[ProjectRecord] = []
    for url in urls:
        for record in ctx.store.find_by_repo(url):
            if record.name not in {r.name for r in found}:
                found.append(record)
    return found


def create_app(
    ctx: DeployContext,
    orchestrator: Optional[Orchestrator] = None,
    secret: Optional[str] = None,
    path: str = DEFAULT_PATH,
) -> FastAPI:
    """
    Build the webhook application.

    Args:
        ctx: DeployContext shared with the orchestrator
        orchestrator: Runs the updates (built from ctx if None)
        secret: Shared webhook secret; signatures are required when set
        path: URL path GitHub posts to

    Returns:
        FastAPI app
    """
    orchestrator = orchestrator or Orchestrator(ctx)
    secret = secret if secret is not None else ctx.settings.webhook_secret
    if not secret:
        logger.warning("Webhook secret not set; requests are not authenticated")

    app = FastAPI(title="Shipyard webhook", description="Redeploys projects on GitHub pushes")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        """Liveness probe."""
        return {"status": "ok", "projects": len(ctx.store.list_all())}

    @app.options(path)
    async def preflight():
        return Response(status_code=200, headers=CORS_HEADERS)

    @app.post(path)
    async def receive(request: Request):
        body = await request.body()

        if secret and not verify_signature(body, request.headers.get("X-Hub-Signature-256"), secret):
            logger.warning("Rejected webhook with a missing or invalid signature")
            return _reply(401, False, "Unauthorized")

        event = request.headers.get("X-GitHub-Event", "")
        if event != "push":
            return _reply(200, True, f"Event {event or 'unknown'} ignored")

        try:
            payload = PushPayload(**json.loads(body))
        except (ValueError, TypeError, PayloadError) as e:
            logger.warning(f"Malformed push payload: {e}")
            return _reply(400, False, "Invalid payload")

        urls = payload.repo_urls()
        if not urls:
            return _reply(400, False, "Invalid payload: no repository URL")

        candidates = find_projects(ctx, urls)
        if not candidates:
            logger.info(f"Push for unknown repository {urls[0]}")
            return _reply(404, False, "Project not found")

        enabled = [r for r in candidates if r.webhook_enabled]
        if not enabled:
            return _reply(200, True, "Webhook disabled for this project, ignored", project=candidates[0].name)

        branch = payload.branch
        matching = [r for r in enabled if r.branch == branch]
        if not matching:
            return _reply(200, True, "Branch mismatch, ignored")

        record = matching[0]
        logger.info(f"Push to {branch} of {urls[0]} ({payload.after or 'unknown commit'}), updating {record.name}")

        loop = asyncio.get_running_loop()
        job = loop.run_in_executor(
            None,
            functools.partial(orchestrator.update, record.name, branch, ctx.settings.webhook_lock_timeout),
        )
        try:
            result = await asyncio.wait_for(asyncio.shield(job), timeout=ctx.settings.webhook_update_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Update of {record.name} still running after {ctx.settings.webhook_update_timeout:g}s")
            return _reply(202, True, "Update in progress", project=record.name)
        except ProjectBusy:
            return _reply(409, False, "Another operation is in progress", project=record.name)
        except ProjectNotFound:
            return _reply(404, False, "Project not found")

        if not result.success:
            return _reply(500, False, result.error or "Update failed", project=record.name, stage=result.stage)
        return _reply(200, True, "Project updated", project=record.name, commit=result.commit)

    return app


def serve(ctx: DeployContext, host: str = "0.0.0.0", port: int = DEFAULT_PORT, secret: Optional[str] = None, path: str = DEFAULT_PATH) -> None:
    app = create_app(ctx, secret=secret, path=path)
    logger.info(f"Webhook listening on http://{host}:{port}{path}")
    uvicorn.run(app, host=host, port=port, log_level="info")
