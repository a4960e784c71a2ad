# Gunicorn configuration for production deployment
# Every worker process runs its own transcription and analysis pools; job
# claims are conditional updates so workers never process the same job twice.

import multiprocessing
import os

bind = f"0.0.0.0:{os.getenv('API_PORT', '8000')}"

# Each process adds TRANSCRIPTION_CONCURRENCY + ANALYSIS_CONCURRENCY pool tasks
workers = int(os.getenv('WEB_CONCURRENCY', multiprocessing.cpu_count()))
worker_class = "uvicorn.workers.UvicornWorker"

# Longer than ANALYSIS_TIMEOUT_SECONDS so in-flight jobs can settle on restart
timeout = 120
graceful_timeout = 90

accesslog = "-"
errorlog = "-"
loglevel = "info"

proc_name = 'callintel-backend'


def post_fork(server, worker):
    """Called just after a worker has been forked."""
    server.log.info("Pipeline worker spawned (pid: %s)", worker.pid)


def worker_int(worker):
    """Called just after a worker exited on SIGINT or SIGQUIT."""
    worker.log.info("Worker received INT or QUIT signal; running jobs will be reaped as stale")
