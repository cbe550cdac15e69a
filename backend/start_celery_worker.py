#!/usr/bin/env python3
"""Start the import worker with suppressed security warnings for containerized environments."""

import sys
import warnings

from celery.bin.celery import main as celery_main

# Suppress the superuser privilege warning
warnings.filterwarnings("ignore", category=UserWarning, message=".*superuser privileges.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message=".*superuser privileges.*")

if __name__ == "__main__":
    sys.argv = [
        "celery",
        "-A",
        "product_importer.workers.celery_app.celery_app",
        "worker",
        "--loglevel=info",
        "--queues=imports",
        "--pool=solo",
        "--beat",
        "--without-mingle",
        "--without-gossip",
    ] + sys.argv[1:]
    sys.exit(celery_main())
