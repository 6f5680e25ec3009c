#!/usr/bin/env python3
"""DokSnap backup daemon runner"""
import os
import sys
import signal
import logging

from doksnap import create_app
from doksnap.scheduler import stop_scheduler


logger = logging.getLogger('doksnap.run')

RECOMMENDED_FD_LIMIT = 1024


def check_file_descriptor_limits():
    """Warn when the open file limit is low for tar/upload workloads."""
    try:
        import resource
        soft_limit, hard_limit = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (ImportError, ValueError, OSError):
        # Not available on this platform
        return

    if soft_limit < RECOMMENDED_FD_LIMIT:
        logger.warning(
            f"File descriptor soft limit is {soft_limit} (recommended: >= {RECOMMENDED_FD_LIMIT}). "
            f"Consider increasing with: ulimit -n {RECOMMENDED_FD_LIMIT}"
        )

    if hard_limit != resource.RLIM_INFINITY and soft_limit < hard_limit * 0.8:
        logger.warning(
            f"File descriptor soft limit ({soft_limit}) is less than 80% of hard limit ({hard_limit})"
        )


def setup_signal_handlers():
    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down DokSnap...")
        stop_scheduler(wait=True)
        logger.info("Shutdown complete")
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)


if __name__ == '__main__':
    app = create_app(os.environ.get('FLASK_ENV', 'production'))

    check_file_descriptor_limits()
    setup_signal_handlers()

    settings = app.extensions['doksnap'].config.status_server
    if settings.enabled:
        logger.info(f"Status server starting on http://{settings.bind}:{settings.port}")
        app.run(host=settings.bind, port=settings.port, debug=False, use_reloader=False)
    else:
        # Scheduler threads do the work; the main thread only waits for signals
        logger.info("Status server disabled, running scheduler only")
        while True:
            signal.pause()
