"""
Statement transaction to QuickBooks posting conversion.

Pure functions over plain dicts: no database, no network. The sync service
runs validate_transaction() and validate_transaction_mappings() first so
that convert_transaction() only ever raises for genuinely broken input.

Sign convention: amount > 0 is money in (Deposit), amount <= 0 is money
out (Purchase). Payloads always carry the absolute amount.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .errors import InvalidDate, MissingMapping, ValidationError, ZeroAmount

SOURCE_TAG = "Imported from Statement Desk"
DEFAULT_DESCRIPTION = "Statement import"
MAX_NOTE_LENGTH = 4000

QBO_APP_URLS = {
    'production': "https://app.qbo.intuit.com/app",
    'sandbox': "https://app.sandbox.qbo.intuit.com/app",
}

LINK_ENTITY_TYPES = {
    'purchase': 'purchase',
    'deposit': 'deposit',
    'journal_entry': 'journal',
}


def parse_amount(value: Any) -> Decimal:
    if value is None or value == '':
        raise ValidationError("Missing transaction amount")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid transaction amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid transaction amount: {value!r}")
    if amount == 0:
        raise ZeroAmount("Transaction amount cannot be zero")
    return amount


def format_date(value: Any) -> str:
    """Return the date as YYYY-MM-DD."""
    if value is None or value == '':
        raise InvalidDate("Missing transaction date")
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()[:10]).isoformat()
    except ValueError:
        raise InvalidDate(f"Invalid date format: {value!r}")


def transaction_type_for(amount: Decimal) -> str:
    return 'deposit' if amount > 0 else 'purchase'


def _money(amount: Decimal) -> float:
    return float(abs(amount).quantize(Decimal('0.01')))


def build_description(transaction: Dict[str, Any], settings: Dict[str, Any]) -> str:
    description = transaction.get('description')
    merchant = transaction.get('normalized_merchant')
    if settings.get('include_original_description', True):
        return description or merchant or DEFAULT_DESCRIPTION
    return merchant or description or DEFAULT_DESCRIPTION


def build_private_note(transaction: Dict[str, Any], settings: Dict[str, Any]) -> str:
    """Provenance note stored on the QuickBooks transaction."""
    parts = [SOURCE_TAG]

    if transaction.get('id') is not None:
        parts.append(f"Transaction ID: {transaction['id']}")
    if transaction.get('confidence') is not None:
        parts.append(f"Confidence: {transaction['confidence']}%")

    description = transaction.get('description')
    merchant = transaction.get('normalized_merchant')
    if description and merchant and description != merchant:
        parts.append(f"Original: {description}")

    if settings.get('include_file_reference', True) and transaction.get('file_id') is not None:
        parts.append(f"File ID: {transaction['file_id']}")

    return ' | '.join(parts)[:MAX_NOTE_LENGTH]


def validate_transaction(transaction: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check the local record before conversion.

    Returns:
        {'valid': bool, 'errors': [str]}
    """
    errors = []

    try:
        format_date(transaction.get('transaction_date'))
    except InvalidDate as e:
        errors.append(str(e))

    try:
        parse_amount(transaction.get('amount'))
    except ValidationError as e:
        errors.append(str(e))

    if not transaction.get('category'):
        errors.append("Missing transaction category")

    return {'valid': not errors, 'errors': errors}


def validate_transaction_mappings(
    transaction: Dict[str, Any],
    mappings: Dict[str, Any],
    settings: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Check that the resolved mappings are enough to post the transaction.

    Args:
        mappings: {'category': mapping dict | None, 'merchant': mapping dict | None}

    Returns:
        {'valid': bool, 'errors': [str], 'warnings': [str]}
    """
    errors = []
    warnings = []

    if not settings.get('bank_account_id'):
        errors.append("No bank account selected")

    category_mapping = mappings.get('category')
    if not category_mapping or not category_mapping.get('qb_account_id'):
        errors.append(f"No mapping for category: {transaction.get('category')}")

    merchant = transaction.get('normalized_merchant')
    if merchant and not mappings.get('merchant'):
        warnings.append(f"No vendor/customer mapping for merchant: {merchant}")

    min_confidence = settings.get('min_confidence', 70)
    confidence = transaction.get('confidence')
    if confidence is not None and confidence < min_confidence:
        warnings.append(f"Low confidence ({confidence}%) - review recommended")

    return {'valid': not errors, 'errors': errors, 'warnings': warnings}


def convert_transaction(
    transaction: Dict[str, Any],
    mappings: Dict[str, Any],
    settings: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Build the QuickBooks payload for one statement transaction.

    Args:
        transaction: Statement transaction as a dict
        mappings: {'category': mapping dict, 'merchant': mapping dict | None}
        settings: Sync job settings (bank_account_id, payment_type, class_id, ...)

    Returns:
        {'type': 'purchase' | 'deposit', 'data': payload}

    Raises:
        InvalidDate, ZeroAmount, ValidationError: Malformed transaction
        MissingMapping: No bank account or no ledger account for the category

    Example:
        >>> result = convert_transaction(
        ...     {'id': 1, 'transaction_date': '2024-01-15', 'amount': -45.67, 'category': 'Groceries'},
        ...     {'category': {'qb_account_id': '64', 'qb_account_name': 'Supplies'}},
        ...     {'bank_account_id': '35'}
        ... )
        >>> result['type'], result['data']['Line'][0]['Amount']
        ('purchase', 45.67)
    """
    txn_date = format_date(transaction.get('transaction_date'))
    amount = parse_amount(transaction.get('amount'))

    bank_account_id = settings.get('bank_account_id')
    if not bank_account_id:
        raise MissingMapping("No bank account selected")

    category_mapping = mappings.get('category')
    if not category_mapping or not category_mapping.get('qb_account_id'):
        raise MissingMapping(f"No mapping for category: {transaction.get('category')}")

    account_ref = {
        'value': str(category_mapping['qb_account_id']),
        'name': category_mapping.get('qb_account_name'),
    }
    bank_ref = {'value': str(bank_account_id)}
    if settings.get('bank_account_name'):
        bank_ref['name'] = settings['bank_account_name']

    merchant_mapping = mappings.get('merchant') or {}
    txn_type = transaction_type_for(amount)

    if txn_type == 'purchase':
        data = _build_purchase(transaction, amount, txn_date, account_ref, bank_ref, merchant_mapping, settings)
    else:
        data = _build_deposit(transaction, amount, txn_date, account_ref, bank_ref, merchant_mapping, settings)

    return {'type': txn_type, 'data': data}


def _build_purchase(transaction, amount, txn_date, account_ref, bank_ref, merchant_mapping, settings):
    detail = {'AccountRef': account_ref}
    if settings.get('class_id'):
        detail['ClassRef'] = {'value': str(settings['class_id'])}

    purchase = {
        'PaymentType': settings.get('payment_type') or 'Cash',
        'AccountRef': bank_ref,
        'TxnDate': txn_date,
        'PrivateNote': build_private_note(transaction, settings),
        'Line': [{
            'Amount': _money(amount),
            'DetailType': 'AccountBasedExpenseLineDetail',
            'AccountBasedExpenseLineDetail': detail,
            'Description': build_description(transaction, settings),
        }],
    }

    if merchant_mapping.get('qb_vendor_id'):
        purchase['EntityRef'] = {
            'value': str(merchant_mapping['qb_vendor_id']),
            'name': merchant_mapping.get('qb_vendor_name'),
            'type': 'Vendor',
        }

    return purchase


def _build_deposit(transaction, amount, txn_date, account_ref, bank_ref, merchant_mapping, settings):
    detail = {'AccountRef': account_ref}
    if merchant_mapping.get('qb_customer_id'):
        detail['Entity'] = {
            'value': str(merchant_mapping['qb_customer_id']),
            'name': merchant_mapping.get('qb_customer_name'),
            'type': 'Customer',
        }
    if settings.get('class_id'):
        detail['ClassRef'] = {'value': str(settings['class_id'])}

    return {
        'TxnDate': txn_date,
        'DepositToAccountRef': bank_ref,
        'PrivateNote': build_private_note(transaction, settings),
        'Line': [{
            'Amount': _money(amount),
            'DetailType': 'DepositLineDetail',
            'DepositLineDetail': detail,
            'Description': build_description(transaction, settings),
        }],
    }


def convert_transaction_batch(
    transactions: List[Dict[str, Any]],
    snapshot,
    settings: Dict[str, Any]
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Validate and convert many transactions against one mapping snapshot.

    Args:
        snapshot: Object with category_for(category, subcategory) and merchant_for(merchant)

    Returns:
        {
            'successful': [{'transaction', 'type', 'data'}],
            'failed': [{'transaction', 'errors'}],
            'warnings': [{'transaction_id', 'warnings'}]
        }
    """
    results = {'successful': [], 'failed': [], 'warnings': []}

    for transaction in transactions:
        validation = validate_transaction(transaction)
        if not validation['valid']:
            results['failed'].append({'transaction': transaction, 'errors': validation['errors']})
            continue

        mappings = {
            'category': snapshot.category_for(transaction.get('category'), transaction.get('subcategory')),
            'merchant': snapshot.merchant_for(transaction.get('normalized_merchant')),
        }
        mapping_validation = validate_transaction_mappings(transaction, mappings, settings)
        if not mapping_validation['valid']:
            results['failed'].append({'transaction': transaction, 'errors': mapping_validation['errors']})
            continue

        if mapping_validation['warnings']:
            results['warnings'].append({
                'transaction_id': transaction.get('id'),
                'warnings': mapping_validation['warnings'],
            })

        converted = convert_transaction(transaction, mappings, settings)
        results['successful'].append({'transaction': transaction, **converted})

    return results


def create_vendor_data(name: str) -> Dict[str, Any]:
    name = name.strip()[:100]
    return {'DisplayName': name, 'PrintOnCheckName': name, 'Active': True}


def create_customer_data(name: str) -> Dict[str, Any]:
    name = name.strip()[:100]
    return {'DisplayName': name, 'PrintOnCheckName': name, 'Active': True}


def get_transaction_link(
    txn_type: str,
    txn_id: str,
    company_id: str,
    environment: str = 'sandbox'
) -> str:
    """Deep link to the posted transaction in the QuickBooks web app."""
    base_url = QBO_APP_URLS['production'] if environment == 'production' else QBO_APP_URLS['sandbox']
    entity_type = LINK_ENTITY_TYPES.get(txn_type, 'transaction')
    return f"{base_url}/{entity_type}?txnId={txn_id}&realmId={company_id}"
