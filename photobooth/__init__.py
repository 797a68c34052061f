"""
Photobooth Job Pipeline

Chroma-key removal, backdrop compositing and AI enhancement of booth photos,
run either on a Celery worker pool or inline when no broker is reachable.
"""

__version__ = "1.0.0"
