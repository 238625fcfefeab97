import uvicorn

from chunkserve.config import settings


def main() -> None:
    uvicorn.run("chunkserve.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
