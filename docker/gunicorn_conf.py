# Gunicorn configuration for DokSnap
# The job state lives in process memory, so exactly one worker serves the
# status API and owns the scheduler.

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = f"{os.environ.get('STATUS_BIND', '0.0.0.0')}:{os.environ.get('STATUS_PORT', '4567')}"
workers = 1
threads = int(os.environ.get('GUNICORN_THREADS', '4'))
# Give running backups time to drain on shutdown
graceful_timeout = int(os.environ.get('GRACEFUL_TIMEOUT', '3600'))
wsgi_app = 'doksnap:create_app()'


def worker_exit(server, worker):
    """
    Called when a worker exits.

    Stops the scheduler and waits for in-flight backups before the process
    goes away.
    """
    from doksnap.scheduler import stop_scheduler

    logger.info(f"Worker PID {worker.pid}: draining scheduler")
    stop_scheduler(wait=True)
