"""CLI entrypoint (Typer).

Commands:
- ``repoverify worker``        run the worker pool and watchdog against the configured broker
- ``repoverify api``           serve the HTTP API
- ``repoverify verify <url>``  verify one repository locally and print the outcome
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import typer

from repoverify.config import get_settings
from repoverify.database.session import close_db, create_engine, create_session_factory, init_db
from repoverify.intake import submit_repositories
from repoverify.jobqueue import InMemoryBroker
from repoverify.observability import configure_logging
from repoverify.resolver import StaticResolver
from repoverify.sandbox.fake import FakeRuntime
from repoverify.schemas import JobOutcome, JobStatus
from repoverify.service import build_service


app = typer.Typer(help="RepoVerify: check that repositories install and start.")


@app.command()
def worker(
    concurrency: int = typer.Option(None, "--concurrency", "-c", help="Override WORKER_CONCURRENCY"),
):
    """Run the worker pool and the watchdog until interrupted."""
    settings = get_settings()
    if concurrency is not None:
        settings = settings.model_copy(update={"worker_concurrency": concurrency})
    configure_logging(settings.log_level)

    async def _run() -> None:
        engine = create_engine(settings)
        if settings.environment == "development":
            await init_db(engine)
        service = build_service(settings, create_session_factory(engine))
        await service.start(workers=True)
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()
            await close_db(engine)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Worker stopped.")


@app.command()
def api(
    host: str = typer.Option(None, "--host"),
    port: int = typer.Option(None, "--port"),
):
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "repoverify.api.main:get_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
    )


def _print_outcome(outcome: JobOutcome, show_logs: bool) -> None:
    verdict = "PASS" if outcome.result else "FAIL"
    typer.echo(f"{verdict} ({outcome.status.value})")
    if outcome.setup_instructions:
        typer.echo(f"Command: {outcome.setup_instructions}")
    if outcome.reason:
        typer.echo(f"Reason: {outcome.reason}")
    if outcome.execution_time_ms is not None:
        typer.echo(f"Time: {outcome.execution_time_ms}ms")
    if show_logs and outcome.logs:
        typer.echo("")
        typer.echo(outcome.logs)


@app.command()
def verify(
    repo_url: str = typer.Argument(..., help="Git URL or local path of the repository"),
    command: str = typer.Option(None, "--command", help="Setup command; skips README resolution"),
    fake_sandbox: bool = typer.Option(
        False, "--fake-sandbox", help="Use the in-process fake runtime instead of Docker"
    ),
    show_logs: bool = typer.Option(True, "--logs/--no-logs"),
):
    """Verify one repository with an in-process queue and print the outcome."""
    settings = get_settings()
    configure_logging(settings.log_level)

    async def _run() -> JobOutcome:
        with tempfile.TemporaryDirectory(prefix="repoverify-cli-") as tmp:
            engine = create_engine(settings, url=f"sqlite+aiosqlite:///{Path(tmp) / 'jobs.db'}")
            await init_db(engine)
            session_factory = create_session_factory(engine)
            service = build_service(
                settings.model_copy(update={"worker_concurrency": 1}),
                session_factory,
                runtime=FakeRuntime() if fake_sandbox else None,
                resolver=StaticResolver(command) if command else None,
                broker=InMemoryBroker(),
            )
            await service.start(workers=True)
            try:
                _, _, handles = await submit_repositories(
                    session_factory, service.queue, [repo_url], track=True
                )
                return await handles[0].wait()
            finally:
                await service.stop()
                await close_db(engine)

    outcome = asyncio.run(_run())
    _print_outcome(outcome, show_logs)
    if outcome.status != JobStatus.COMPLETED or not outcome.result:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
