"""Run the proxy with uvicorn: ``python -m streamproxy``."""

import uvicorn

from streamproxy.config import settings


def main():
    # Single worker: the admission counters live in process memory.
    uvicorn.run("streamproxy.main:app", host=settings.host, port=settings.port, workers=1)


if __name__ == "__main__":
    main()
