"""Media transcoder package."""

__all__ = ["create_app"]


def create_app():
    """Lazily import app factory to avoid import-time side effects."""
    from media_transcoder.factory import create_app as _create_app

    return _create_app()
