"""
QuickBooks Connection Routes

User-facing endpoints for:
- Connecting a QuickBooks company (OAuth)
- OAuth callback handling
- Connection status and disconnect
- Browsing accounts, vendors and customers
"""

import logging
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional

from ledgersync.config import get_settings
from ledgersync.database import get_db
from ledgersync.app import models, schemas
from ledgersync.app.auth import get_current_active_user
from ledgersync.app.quickbooks.auth_service import TokenManager
from ledgersync.app.quickbooks.client import QuickBooksClient
from ledgersync.app.quickbooks.errors import AuthError, QuickBooksError, RemoteFault
from ledgersync.app.quickbooks.providers.quickbooks import OAuthProviderError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quickbooks", tags=["quickbooks"])


def raise_http_error(e: Exception):
    """Translate service errors into HTTP responses."""
    if isinstance(e, AuthError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{e} Reconnect required."
        )
    if isinstance(e, RemoteFault):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, httpx.HTTPError):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not reach QuickBooks: {e}"
        )
    if isinstance(e, ValueError) and 'not found' in str(e).lower():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def get_active_connection(db: Session, user: models.User) -> models.QuickBooksConnection:
    connection = TokenManager(db).get_connection(user.id)
    if not connection:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="QuickBooks is not connected"
        )
    return connection


@router.get("/connect", response_model=schemas.OAuthInitiateResponse)
def connect_quickbooks(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Start the QuickBooks OAuth flow.

    Example:
        GET /quickbooks/connect

        Response:
        {
            "authorization_url": "https://appcenter.intuit.com/connect/oauth2?...",
            "state": "eyJhbGciOi..."
        }
    """
    return TokenManager(db).begin_authorization(current_user.id)


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="Signed state token"),
    realm_id: Optional[str] = Query(None, alias="realmId", description="QuickBooks company id"),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """
    OAuth callback endpoint.

    Intuit redirects the browser here, so there is no bearer token; the
    user is taken from the signed state, which is checked for age.
    """
    frontend_url = get_settings().frontend_url

    def redirect(**params):
        return RedirectResponse(url=f"{frontend_url}/settings/quickbooks?{urlencode(params)}")

    if error:
        return redirect(error=error)
    if not code or not state or not realm_id:
        return redirect(error="missing_parameters")

    manager = TokenManager(db)
    payload = manager.decode_state(state)
    if payload is None or not manager.verify_state(state, int(payload['sub'])):
        return redirect(error="invalid_state")

    user_id = int(payload['sub'])
    try:
        connection = await manager.complete_authorization(user_id, code, realm_id)
    except (OAuthProviderError, httpx.HTTPError) as e:
        logger.error(f"QuickBooks authorization failed for user {user_id}: {e}")
        return redirect(error="connection_failed")

    try:
        info = await QuickBooksClient(db, token_manager=manager).get_company_info(user_id)
        connection.company_name = info.get('CompanyName')
        db.commit()
    except (QuickBooksError, httpx.HTTPError) as e:
        logger.warning(f"Could not load company info for realm {realm_id}: {e}")

    return redirect(connected="true")


@router.get("/status", response_model=schemas.ConnectionStatusResponse)
async def connection_status(
    test: bool = Query(False, description="Also call QuickBooks to verify the connection"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    manager = TokenManager(db)
    result = manager.check_connection_status(current_user.id)

    if test and result['connected']:
        client = QuickBooksClient(db, token_manager=manager)
        result['connection_test'] = await client.test_connection(current_user.id)

    return result


@router.post("/disconnect")
async def disconnect_quickbooks(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Disconnect QuickBooks.

    Sync history and mappings are kept.
    """
    disconnected = await TokenManager(db).disconnect(current_user.id)
    if not disconnected:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active QuickBooks connection"
        )
    return {"success": True}


@router.get("/accounts")
async def list_quickbooks_entities(
    type: str = Query("accounts", pattern="^(accounts|vendors|customers)$"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
) -> Dict[str, List[Dict[str, Any]]]:
    """List QuickBooks accounts, vendors or customers for the active company."""
    client = QuickBooksClient(db)
    try:
        if type == "vendors":
            items = await client.fetch_vendors(current_user.id)
        elif type == "customers":
            items = await client.fetch_customers(current_user.id)
        else:
            items = await client.fetch_accounts(current_user.id)
    except (QuickBooksError, httpx.HTTPError) as e:
        raise_http_error(e)

    return {type: items}
