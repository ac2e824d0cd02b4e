# Gunicorn configuration for gfsbackup
# Only one worker runs the scheduler, so backups never overlap on a destination

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))

# Dry runs are synchronous requests and may walk large trees
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '300'))


def post_fork(server, worker):
    """
    Called in each worker right after fork, before the app is loaded.

    Designates the first worker (worker.age == 1, the arbiter counts from 1)
    as the scheduler owner.
    create_app() reads SCHEDULER_WORKER and starts APScheduler only there.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (uses 'age' attribute: 1, 2, 3, ...)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
