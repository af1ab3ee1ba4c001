#!/usr/bin/env python3
"""Start the housekeeping worker with an embedded beat scheduler."""

import sys
import warnings

# Containers commonly run the worker as root.
warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from recordkeeper.workers.celery_app import celery_app

if __name__ == '__main__':
    celery_app.worker_main(
        [
            'worker',
            '--loglevel=info',
            '--queues=housekeeping,celery',
            '--pool=solo',
            '--beat',
            '--without-mingle',
            '--without-gossip',
        ]
        + sys.argv[1:]
    )
