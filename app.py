"""Gunicorn entrypoint: ``gunicorn app:app``."""

from media_transcoder import create_app

app = create_app()
