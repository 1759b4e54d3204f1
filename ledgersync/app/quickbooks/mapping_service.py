"""
Entity Mapping Resolver

Persistent mappings from local statement categories and merchants to
QuickBooks accounts, vendors and customers:
- AI-assisted generation for unmapped keys
- Upserts keyed by (connection, category, subcategory) and (connection, merchant)
- Pre-flight coverage check for a set of transactions
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from ledgersync.app.models import (
    CategoryMapping, MerchantMapping, MerchantMappingType, StatementTransaction
)
from .oracle import MappingOracle

logger = logging.getLogger(__name__)

# QuickBooks AccountType values a statement category may post to
CANDIDATE_ACCOUNT_TYPES = ['Expense', 'Other Expense', 'Cost of Goods Sold', 'Income', 'Other Income']


def _category_key(category: Optional[str], subcategory: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    return (category, subcategory or None)


class MappingSnapshot:
    """
    Point-in-time copy of a connection's mappings as plain dicts.

    Taken once per sync run so that concurrent edits do not affect
    transactions that are already being converted.
    """

    def __init__(self, categories: Dict[Tuple, Dict[str, Any]], merchants: Dict[str, Dict[str, Any]]):
        self.categories = categories
        self.merchants = merchants

    def category_for(self, category: Optional[str], subcategory: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Exact (category, subcategory) match, falling back to the category-only mapping."""
        if not category:
            return None
        mapping = self.categories.get(_category_key(category, subcategory))
        if mapping is None and subcategory:
            mapping = self.categories.get(_category_key(category, None))
        return mapping

    def merchant_for(self, merchant: Optional[str]) -> Optional[Dict[str, Any]]:
        if not merchant:
            return None
        return self.merchants.get(merchant)

    def add_merchant(self, merchant: str, mapping: Dict[str, Any]) -> None:
        self.merchants[merchant] = mapping


def category_mapping_to_dict(mapping: CategoryMapping) -> Dict[str, Any]:
    return {
        'id': mapping.id,
        'category': mapping.category,
        'subcategory': mapping.subcategory,
        'qb_account_id': mapping.qb_account_id,
        'qb_account_name': mapping.qb_account_name,
        'qb_account_type': mapping.qb_account_type,
        'confidence': mapping.confidence,
        'auto_mapped': mapping.auto_mapped,
    }


def merchant_mapping_to_dict(mapping: MerchantMapping) -> Dict[str, Any]:
    return {
        'id': mapping.id,
        'normalized_merchant': mapping.normalized_merchant,
        'mapping_type': MerchantMappingType(mapping.mapping_type).value,
        'qb_vendor_id': mapping.qb_vendor_id,
        'qb_vendor_name': mapping.qb_vendor_name,
        'qb_customer_id': mapping.qb_customer_id,
        'qb_customer_name': mapping.qb_customer_name,
        'confidence': mapping.confidence,
        'auto_created': mapping.auto_created,
    }


class MappingService:
    """
    Category and merchant mapping service for one database session.

    Example:
        >>> service = MappingService(db)
        >>> suggestions = await service.generate_category_mappings(
        ...     connection.id, ['Groceries'], accounts
        ... )
        >>> service.save_category_mappings(connection.id, suggestions)
    """

    def __init__(self, db: Session, oracle: Optional[MappingOracle] = None):
        self.db = db
        self.oracle = oracle or MappingOracle()

    # Generation

    async def generate_category_mappings(
        self,
        connection_id: int,
        categories: Iterable[Union[str, Dict[str, Optional[str]]]],
        remote_accounts: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """
        Suggest an account for each category.

        Only Expense/Income type accounts are offered as candidates.
        Suggestions naming an account that is not a candidate are dropped
        unless they ask for a new account to be created.

        Returns:
            List of mapping dicts ready for save_category_mappings()
        """
        items = []
        for category in categories:
            if isinstance(category, str):
                items.append({'category': category, 'subcategory': None})
            else:
                items.append({'category': category['category'], 'subcategory': category.get('subcategory')})

        candidates = [acc for acc in remote_accounts if acc.get('AccountType') in CANDIDATE_ACCOUNT_TYPES]
        known = {str(acc.get('Id')): acc for acc in candidates}

        suggestions = await self.oracle.suggest_category_mappings(items, candidates)

        results = []
        for suggestion in suggestions:
            account = known.get(suggestion.qb_account_id) if suggestion.qb_account_id else None
            if account is None and not suggestion.create_new_account:
                logger.warning(
                    f"Dropping category suggestion for {suggestion.category!r}: "
                    f"unknown account {suggestion.qb_account_id!r}"
                )
                continue

            results.append({
                'connection_id': connection_id,
                'category': suggestion.category,
                'subcategory': suggestion.subcategory,
                'qb_account_id': str(account.get('Id')) if account else None,
                'qb_account_name': account.get('Name') if account else suggestion.qb_account_name,
                'qb_account_type': account.get('AccountType') if account else suggestion.qb_account_type,
                'confidence': int(round(suggestion.confidence)),
                'reasoning': suggestion.reasoning,
                'create_new_account': account is None,
                'auto_mapped': True,
            })

        return results

    async def generate_merchant_mappings(
        self,
        connection_id: int,
        merchants: Iterable[str],
        vendors: List[Dict[str, Any]],
        customers: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Suggest a vendor or customer for each merchant, or a name to create."""
        merchants = [m for m in merchants if m]
        known_vendors = {str(v.get('Id')): v for v in vendors}
        known_customers = {str(c.get('Id')): c for c in customers}

        suggestions = await self.oracle.suggest_merchant_mappings(merchants, vendors, customers)

        results = []
        for suggestion in suggestions:
            result = {
                'connection_id': connection_id,
                'normalized_merchant': suggestion.merchant,
                'mapping_type': suggestion.mapping_type.value,
                'qb_vendor_id': None,
                'qb_vendor_name': None,
                'qb_customer_id': None,
                'qb_customer_name': None,
                'confidence': int(round(suggestion.confidence)),
                'reasoning': suggestion.reasoning,
                'create_new': suggestion.create_new,
                'suggested_name': suggestion.suggested_name or suggestion.merchant,
            }

            if suggestion.mapping_type == MerchantMappingType.CUSTOMER:
                entity = known_customers.get(suggestion.qb_customer_id or '')
                if entity:
                    result['qb_customer_id'] = str(entity.get('Id'))
                    result['qb_customer_name'] = entity.get('DisplayName')
            else:
                entity = known_vendors.get(suggestion.qb_vendor_id or '')
                if entity:
                    result['qb_vendor_id'] = str(entity.get('Id'))
                    result['qb_vendor_name'] = entity.get('DisplayName')

            if entity is None and not suggestion.create_new:
                logger.warning(f"Dropping merchant suggestion for {suggestion.merchant!r}: no matching entity")
                continue

            result['create_new'] = entity is None
            results.append(result)

        return results

    # Persistence

    def save_category_mappings(self, connection_id: int, mappings: List[Dict[str, Any]]) -> List[CategoryMapping]:
        """
        Upsert category mappings by (connection, category, subcategory).

        Mappings without an account id (create-new suggestions) are skipped.
        """
        saved = []
        for data in mappings:
            if not data.get('qb_account_id'):
                logger.info(f"Skipping category mapping for {data.get('category')!r}: no account id")
                continue

            category, subcategory = _category_key(data['category'], data.get('subcategory'))
            query = self.db.query(CategoryMapping).filter(
                CategoryMapping.connection_id == connection_id,
                CategoryMapping.category == category
            )
            if subcategory is None:
                query = query.filter(CategoryMapping.subcategory.is_(None))
            else:
                query = query.filter(CategoryMapping.subcategory == subcategory)

            mapping = query.first()
            if mapping is None:
                mapping = CategoryMapping(connection_id=connection_id, category=category, subcategory=subcategory)
                self.db.add(mapping)

            mapping.qb_account_id = str(data['qb_account_id'])
            mapping.qb_account_name = data.get('qb_account_name')
            mapping.qb_account_type = data.get('qb_account_type')
            mapping.confidence = int(data.get('confidence', 100))
            mapping.auto_mapped = bool(data.get('auto_mapped', False))
            mapping.reasoning = data.get('reasoning')

            # Flush so a repeated key later in this call finds the row
            self.db.flush()
            saved.append(mapping)

        self.db.commit()
        return saved

    def save_merchant_mappings(self, connection_id: int, mappings: List[Dict[str, Any]]) -> List[MerchantMapping]:
        """
        Upsert merchant mappings by (connection, normalized merchant).

        Only the side matching mapping_type is stored; the other is cleared.
        """
        saved = []
        for data in mappings:
            mapping_type = MerchantMappingType(data.get('mapping_type') or MerchantMappingType.VENDOR)
            if mapping_type == MerchantMappingType.CUSTOMER:
                entity_id, entity_name = data.get('qb_customer_id'), data.get('qb_customer_name')
            else:
                entity_id, entity_name = data.get('qb_vendor_id'), data.get('qb_vendor_name')

            if not entity_id:
                logger.info(f"Skipping merchant mapping for {data.get('normalized_merchant')!r}: no entity id")
                continue

            merchant = data['normalized_merchant']
            mapping = self.db.query(MerchantMapping).filter(
                MerchantMapping.connection_id == connection_id,
                MerchantMapping.normalized_merchant == merchant
            ).first()
            if mapping is None:
                mapping = MerchantMapping(connection_id=connection_id, normalized_merchant=merchant)
                self.db.add(mapping)

            mapping.mapping_type = mapping_type
            if mapping_type == MerchantMappingType.CUSTOMER:
                mapping.qb_customer_id, mapping.qb_customer_name = str(entity_id), entity_name
                mapping.qb_vendor_id = mapping.qb_vendor_name = None
            else:
                mapping.qb_vendor_id, mapping.qb_vendor_name = str(entity_id), entity_name
                mapping.qb_customer_id = mapping.qb_customer_name = None

            mapping.confidence = int(data.get('confidence', 100))
            mapping.auto_created = bool(data.get('auto_created', False))
            mapping.reasoning = data.get('reasoning')

            self.db.flush()
            saved.append(mapping)

        self.db.commit()
        return saved

    # Reads

    def get_category_mappings(self, connection_id: int) -> List[CategoryMapping]:
        return self.db.query(CategoryMapping).filter(
            CategoryMapping.connection_id == connection_id
        ).order_by(CategoryMapping.category, CategoryMapping.subcategory).all()

    def get_merchant_mappings(self, connection_id: int) -> List[MerchantMapping]:
        return self.db.query(MerchantMapping).filter(
            MerchantMapping.connection_id == connection_id
        ).order_by(MerchantMapping.normalized_merchant).all()

    def delete_category_mapping(self, connection_id: int, mapping_id: int) -> bool:
        mapping = self.db.query(CategoryMapping).filter(
            CategoryMapping.id == mapping_id,
            CategoryMapping.connection_id == connection_id
        ).first()
        if not mapping:
            return False
        self.db.delete(mapping)
        self.db.commit()
        return True

    def delete_merchant_mapping(self, connection_id: int, mapping_id: int) -> bool:
        mapping = self.db.query(MerchantMapping).filter(
            MerchantMapping.id == mapping_id,
            MerchantMapping.connection_id == connection_id
        ).first()
        if not mapping:
            return False
        self.db.delete(mapping)
        self.db.commit()
        return True

    def get_user_categories(self, user_id: int, file_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Distinct (category, subcategory) pairs in the user's statements, with counts."""
        query = self.db.query(
            StatementTransaction.category,
            StatementTransaction.subcategory,
            func.count(StatementTransaction.id)
        ).filter(
            StatementTransaction.user_id == user_id,
            StatementTransaction.category.isnot(None)
        )
        if file_id is not None:
            query = query.filter(StatementTransaction.file_id == file_id)

        rows = query.group_by(StatementTransaction.category, StatementTransaction.subcategory).all()
        return [
            {'category': category, 'subcategory': subcategory, 'count': count}
            for category, subcategory, count in sorted(rows, key=lambda r: (r[0], r[1] or ''))
        ]

    def get_user_merchants(self, user_id: int, file_id: Optional[int] = None) -> List[str]:
        query = self.db.query(StatementTransaction.normalized_merchant).filter(
            StatementTransaction.user_id == user_id,
            StatementTransaction.normalized_merchant.isnot(None)
        )
        if file_id is not None:
            query = query.filter(StatementTransaction.file_id == file_id)

        return sorted({row[0] for row in query.distinct().all() if row[0]})

    def get_mapping_snapshot(self, connection_id: int) -> MappingSnapshot:
        categories = {
            _category_key(m.category, m.subcategory): category_mapping_to_dict(m)
            for m in self.get_category_mappings(connection_id)
        }
        merchants = {
            m.normalized_merchant: merchant_mapping_to_dict(m)
            for m in self.get_merchant_mappings(connection_id)
        }
        return MappingSnapshot(categories, merchants)

    def get_mapping_stats(self, connection_id: int) -> Dict[str, int]:
        category_mappings = self.get_category_mappings(connection_id)
        merchant_mappings = self.get_merchant_mappings(connection_id)

        auto_mapped = sum(1 for m in category_mappings if m.auto_mapped)
        avg_confidence = 0
        if category_mappings:
            avg_confidence = round(sum(m.confidence or 0 for m in category_mappings) / len(category_mappings))

        return {
            'total_category_mappings': len(category_mappings),
            'auto_mapped_categories': auto_mapped,
            'manual_mapped_categories': len(category_mappings) - auto_mapped,
            'avg_category_confidence': avg_confidence,
            'total_merchant_mappings': len(merchant_mappings),
            'auto_created_vendors': sum(1 for m in merchant_mappings if m.auto_created),
        }

    # Pre-flight

    def validate_mappings(
        self,
        connection_id: int,
        transactions: List[Dict[str, Any]],
        min_confidence: int = 70,
        snapshot: Optional[MappingSnapshot] = None
    ) -> Dict[str, Any]:
        """
        Report how well the current mappings cover a set of transactions.

        Read-only. A set is ready when every category resolves to an account;
        unmapped merchants are allowed since sync creates them on the fly.

        Returns:
            {
                'total': int,
                'valid': int,
                'unmapped_categories': [str],
                'unmapped_merchants': [str],
                'low_confidence': [{'category', 'subcategory', 'confidence', 'qb_account_name'}],
                'coverage': float,
                'ready': bool
            }
        """
        snapshot = snapshot or self.get_mapping_snapshot(connection_id)

        valid = 0
        unmapped_categories = set()
        unmapped_merchants = set()
        low_confidence = {}

        for txn in transactions:
            category = txn.get('category')
            subcategory = txn.get('subcategory')
            mapping = snapshot.category_for(category, subcategory)

            if mapping:
                valid += 1
                if (mapping.get('confidence') or 0) < min_confidence:
                    key = (mapping['category'], mapping['subcategory'])
                    low_confidence[key] = {
                        'category': mapping['category'],
                        'subcategory': mapping['subcategory'],
                        'confidence': mapping['confidence'],
                        'qb_account_name': mapping['qb_account_name'],
                    }
            else:
                unmapped_categories.add(category or 'Uncategorized')

            merchant = txn.get('normalized_merchant')
            if merchant and snapshot.merchant_for(merchant) is None:
                unmapped_merchants.add(merchant)

        total = len(transactions)
        return {
            'total': total,
            'valid': valid,
            'unmapped_categories': sorted(unmapped_categories),
            'unmapped_merchants': sorted(unmapped_merchants),
            'low_confidence': list(low_confidence.values()),
            'coverage': (valid / total * 100) if total else 0,
            'ready': not unmapped_categories,
        }
