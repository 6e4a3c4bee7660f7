#!/usr/bin/env python3
"""
Root-level worker entry point for deployment platforms that start services
from the repository root.

    python worker.py                   # RQ worker
    python worker.py --with-scheduler  # assembly sweep scheduler
"""

from newsletter_workers.worker import main

if __name__ == '__main__':
    main()
