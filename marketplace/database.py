import logging
from typing import Optional

import firebase_admin
from fastapi import Request
from firebase_admin import credentials, firestore

from .config import FIREBASE_PROJECT_ID, GOOGLE_APPLICATION_CREDENTIALS

logger = logging.getLogger(__name__)


def init_firebase() -> firebase_admin.App:
    """Initialize (or reuse) the Firebase Admin app"""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {"projectId": FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None
    if GOOGLE_APPLICATION_CREDENTIALS:
        cred = credentials.Certificate(GOOGLE_APPLICATION_CREDENTIALS)
        logger.info("🔑 Using service account credentials for Firebase")
    else:
        cred = credentials.ApplicationDefault()
        logger.info("🔑 Using application default credentials for Firebase")

    app = firebase_admin.initialize_app(cred, options)
    logger.info(f"✅ Firebase Admin initialized (project={FIREBASE_PROJECT_ID})")
    return app


def create_firestore_client(app: Optional[firebase_admin.App] = None):
    """Create the Firestore client used for the lifetime of the process"""
    client = firestore.client(app or init_firebase())
    logger.info("✅ Firestore client created")
    return client


def get_db(request: Request):
    """Firestore client created at startup (see main.lifespan)"""
    return request.app.state.firestore
