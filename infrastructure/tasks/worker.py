"""Entry point for running the payments Celery worker locally."""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(argv=["worker", "--hostname=payments@%h", "--loglevel=INFO", "-Q", "high,default,low"])


if __name__ == "__main__":
    main()
