from __future__ import annotations

import atexit
import logging

from fastmcp import FastMCP

from talkscribe.config import Settings, load_settings
from talkscribe.db.jobs import JobStore
from talkscribe.mcp_tools import ToolRegistry
from talkscribe.routes import register_routes
from talkscribe.services.prober import DurationProber
from talkscribe.services.thumbnail import ThumbnailGenerator
from talkscribe.timeline import TimelineReconstructor
from talkscribe.worker import JobManager

logger = logging.getLogger(__name__)


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = JobStore(settings.jobs_dir)
        settings.input_dir.mkdir(parents=True, exist_ok=True)
        self.prober = DurationProber(settings.ffprobe_bin, settings.probe_timeout_seconds)
        self.thumbnails = ThumbnailGenerator(
            self.store,
            ffmpeg_bin=settings.ffmpeg_bin,
            offset=settings.thumbnail_offset,
            width=settings.thumbnail_width,
        )
        self.manager = JobManager(
            store=self.store,
            pipeline_command=settings.pipeline_command,
            thumbnails=self.thumbnails,
            input_root=settings.input_dir,
        )
        self.timeline = TimelineReconstructor(
            store=self.store,
            prober=self.prober,
            legacy_scope_dir=settings.legacy_scope_dir,
        )

    def close(self) -> None:
        self.manager.shutdown()


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="talkscribe")

    tools = ToolRegistry(runtime.manager, runtime.store, runtime.timeline)
    tools.register(mcp)
    register_routes(mcp, runtime)

    return mcp


def cli() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    settings = load_settings()
    runtime = AppRuntime(settings)
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting talkscribe on %s:%s (jobs in %s)", settings.host, settings.port, settings.jobs_dir)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
