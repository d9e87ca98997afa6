"""命令行启动入口：llm-json-parse。"""

import uvicorn

from query_core.api.app import create_app
from query_core.config.settings import settings
from query_core.infrastructure.logging.logger import get_logger, setup_logger


def main() -> None:
    setup_logger(settings.log_level, settings.log_format, log_dir=settings.log_dir)
    log = get_logger(component="server")
    app = create_app(cfg=settings, logger=log)
    uvicorn.run(
        app,
        host=settings.host or "0.0.0.0",
        port=settings.port,
        timeout_keep_alive=int(settings.idle_timeout),
        access_log=False,
    )


if __name__ == "__main__":
    main()
