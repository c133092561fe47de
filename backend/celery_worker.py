#!/usr/bin/env python3
"""
Celery worker startup script for the exam integrity monitoring service

    celery -A celery_worker worker -Q notifications,maintenance --loglevel=info
    celery -A celery_worker beat --loglevel=info
"""

import logging

from examguard.core.celery_app import celery_app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

if __name__ == '__main__':
    celery_app.start()
