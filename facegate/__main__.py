"""Run FaceGate server: python3 -m facegate"""

import uvicorn

from facegate.config import settings


def main() -> None:
    uvicorn.run("facegate.api.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
