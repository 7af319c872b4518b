from fastapi import APIRouter, HTTPException, Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import firebase_admin
from firebase_admin import auth, credentials
from app.core.config import settings
import json
import logging
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def init_firebase():
    """Initialize Firebase Admin SDK if not already initialized."""
    if firebase_admin._apps:
        return True

    firebase_creds_json = os.getenv("FIREBASE_CREDENTIALS_JSON")

    # 1. JSON string in the environment
    if firebase_creds_json:
        try:
            cred = credentials.Certificate(json.loads(firebase_creds_json))
            firebase_admin.initialize_app(cred)
            logger.info("Firebase Admin SDK initialized from FIREBASE_CREDENTIALS_JSON")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize Firebase from JSON env var: {e}")

    # 2. Credentials file
    firebase_creds_path = os.getenv("FIREBASE_CREDENTIALS_PATH", "firebase-credentials.json")
    possible_paths = [
        firebase_creds_path,
        os.path.join(os.getcwd(), firebase_creds_path),
    ]

    for path in possible_paths:
        if os.path.exists(path):
            try:
                cred = credentials.Certificate(path)
                firebase_admin.initialize_app(cred)
                logger.info(f"Firebase Admin SDK initialized with: {path}")
                return True
            except Exception as e:
                logger.error(f"Failed to initialize Firebase with {path}: {e}")

    logger.warning(f"Firebase credentials not found. Tried env var and paths: {possible_paths}")
    return False


firebase_initialized = init_firebase()

security = HTTPBearer(auto_error=False)

# Used when TEST_MODE=true and no X-Test-User header is sent
TEST_USER_ID = "test_user_123"


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_test_user: Optional[str] = Header(None),
) -> str:
    """
    Verify the Firebase ID token and return the user id every billing and
    usage record is keyed by.

    For testing: set TEST_MODE=true and pass the X-Test-User header.
    """
    if settings.TEST_MODE:
        return x_test_user or TEST_USER_ID

    if not firebase_initialized:
        logger.error("Firebase Admin SDK not initialized")
        raise HTTPException(status_code=500, detail="Authentication service not configured")

    if not credentials:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        decoded_token = auth.verify_id_token(credentials.credentials)
        return decoded_token["uid"]
    except auth.ExpiredIdTokenError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except auth.InvalidIdTokenError as e:
        logger.error(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    except Exception as e:
        logger.error(f"Authentication error: {e}")
        raise HTTPException(status_code=401, detail="Could not validate credentials")


@router.get("/verify")
async def verify_token(user_id: str = Depends(get_current_user_id)):
    """Verify the current user's token."""
    return {
        "valid": True,
        "user_id": user_id
    }
