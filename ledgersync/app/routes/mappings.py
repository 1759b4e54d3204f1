"""
QuickBooks Mapping Routes

Endpoints for reviewing, suggesting and editing category and merchant
mappings for the user's active QuickBooks company.
"""

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List

from ledgersync.database import get_db
from ledgersync.app import models, schemas
from ledgersync.app.auth import get_current_active_user
from ledgersync.app.quickbooks.client import QuickBooksClient
from ledgersync.app.quickbooks.errors import QuickBooksError
from ledgersync.app.quickbooks.mapping_service import MappingService
from ledgersync.app.quickbooks.sync_service import transaction_to_dict
from .quickbooks import get_active_connection, raise_http_error

router = APIRouter(prefix="/quickbooks/mappings", tags=["quickbooks-mappings"])


@router.get("/", response_model=schemas.MappingsResponse)
def list_mappings(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    connection = get_active_connection(db, current_user)
    service = MappingService(db)
    return {
        'category_mappings': service.get_category_mappings(connection.id),
        'merchant_mappings': service.get_merchant_mappings(connection.id),
        'stats': service.get_mapping_stats(connection.id),
    }


@router.post("/auto-suggest")
async def auto_suggest_mappings(
    request: schemas.AutoSuggestRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
) -> Dict[str, Any]:
    """
    Ask the AI oracle for mappings of the user's categories or merchants.

    Example:
        POST /quickbooks/mappings/auto-suggest
        {
            "type": "categories",
            "save": true
        }

        Response:
        {
            "suggestions": [{"category": "Groceries", "qb_account_id": "64", "confidence": 92, ...}],
            "saved": 1
        }
    """
    connection = get_active_connection(db, current_user)
    service = MappingService(db)
    client = QuickBooksClient(db)

    try:
        if request.type == "categories":
            categories = service.get_user_categories(current_user.id)
            accounts = await client.fetch_accounts(current_user.id)
            suggestions = await service.generate_category_mappings(connection.id, categories, accounts)
            saved = service.save_category_mappings(connection.id, suggestions) if request.save else []
        else:
            merchants = service.get_user_merchants(current_user.id)
            vendors = await client.fetch_vendors(current_user.id)
            customers = await client.fetch_customers(current_user.id)
            suggestions = await service.generate_merchant_mappings(connection.id, merchants, vendors, customers)
            saved = service.save_merchant_mappings(connection.id, suggestions) if request.save else []
    except (QuickBooksError, httpx.HTTPError) as e:
        raise_http_error(e)

    return {'suggestions': suggestions, 'saved': len(saved)}


@router.put("/categories", response_model=List[schemas.CategoryMapping])
def update_category_mappings(
    mappings: List[schemas.CategoryMappingCreate],
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    connection = get_active_connection(db, current_user)
    return MappingService(db).save_category_mappings(connection.id, [m.model_dump() for m in mappings])


@router.put("/merchants", response_model=List[schemas.MerchantMapping])
def update_merchant_mappings(
    mappings: List[schemas.MerchantMappingCreate],
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    connection = get_active_connection(db, current_user)
    return MappingService(db).save_merchant_mappings(
        connection.id, [m.model_dump(mode='json') for m in mappings]
    )


@router.delete("/categories/{mapping_id}")
def delete_category_mapping(
    mapping_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    connection = get_active_connection(db, current_user)
    if not MappingService(db).delete_category_mapping(connection.id, mapping_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mapping not found")
    return {"success": True}


@router.delete("/merchants/{mapping_id}")
def delete_merchant_mapping(
    mapping_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    connection = get_active_connection(db, current_user)
    if not MappingService(db).delete_merchant_mapping(connection.id, mapping_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mapping not found")
    return {"success": True}


@router.post("/validate", response_model=schemas.MappingValidation)
def validate_mappings(
    request: schemas.ValidateMappingsRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Pre-flight coverage check for a statement file (or all of the user's transactions)."""
    connection = get_active_connection(db, current_user)

    query = db.query(models.StatementTransaction).filter(
        models.StatementTransaction.user_id == current_user.id
    )
    if request.file_id is not None:
        query = query.filter(models.StatementTransaction.file_id == request.file_id)
    transactions = [transaction_to_dict(t) for t in query.all()]

    kwargs = {}
    if request.min_confidence is not None:
        kwargs['min_confidence'] = request.min_confidence
    return MappingService(db).validate_mappings(connection.id, transactions, **kwargs)
