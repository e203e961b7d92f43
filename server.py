# server.py — run the matching gateway under uvicorn
import asyncio
import logging

import config
from gateway import create_app, serve

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO),
                    format="%(levelname)s:%(name)s:%(message)s")
log = logging.getLogger("server")


async def main():
    # the app's lifespan opens and closes the store
    app = create_app()
    log.info("listening on %s:%s (%s)", config.HOST, config.PORT, "postgres" if config.USE_POSTGRES else "sqlite")
    await serve(app, config.HOST, config.PORT)


if __name__ == "__main__":
    asyncio.run(main())
