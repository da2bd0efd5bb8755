from sqlalchemy import or_

EXCLUDED_ENTITY_TYPES = [
    'broker',
    'freight forwarder',
    'property broker',
    'household goods broker',
    'passenger broker',
]
CARRIER_KEYWORDS = [
    'carrier', 'motor', 'truck', 'transport', 'logistics', 'freight', 'hauling',
    'delivery', 'corporation', 'llc', 'inc', 'company', 'enterprises',
]
CLASSIFICATION_KEYWORDS = ['general freight', 'specialized', 'household goods', 'passenger']
OPERATION_KEYWORDS = ['authorized', 'for hire', 'private']


def _get(data, key):
    if isinstance(data, dict):
        return data.get(key)
    return getattr(data, key, None)


def is_carrier_entity(data):
    entity_type = _get(data, 'entity_type')
    # legacy rows without an entity type are assumed to be carriers
    if not entity_type:
        return True
    entity_type = entity_type.lower().strip()

    # multi-entity values like "CARRIER/SHIPPER/BROKER": the first role wins
    if '/' in entity_type:
        first = entity_type.split('/')[0].strip()
        if first == 'carrier':
            return True
        if first == 'broker':
            return False

    if entity_type in EXCLUDED_ENTITY_TYPES:
        return False
    if any(word in entity_type for word in CARRIER_KEYWORDS):
        return True

    classification = _get(data, 'operation_classification') or []
    if classification and any(word in classification[0].lower() for word in CLASSIFICATION_KEYWORDS):
        return True
    operation = _get(data, 'carrier_operation') or []
    if operation and any(word in operation[0].lower() for word in OPERATION_KEYWORDS):
        return True
    return True


def get_filter_reason(data):
    entity_type = _get(data, 'entity_type')
    if not entity_type or is_carrier_entity(data):
        return None
    entity_type = entity_type.lower()
    if 'freight forwarder' in entity_type:
        return 'Freight forwarder (not a motor carrier)'
    if 'property broker' in entity_type:
        return 'Property broker (not a motor carrier)'
    if 'passenger broker' in entity_type:
        return 'Passenger broker (not a motor carrier)'
    if 'household goods' in entity_type:
        return 'Household goods broker (not a motor carrier)'
    if 'broker' in entity_type:
        return 'Freight broker (not a motor carrier)'
    return None


def filter_carriers_only(carriers):
    return [c for c in carriers if is_carrier_entity(c)]


def carrier_only_query(query, model):
    """Excludes broker-type rows at the SQL level; multi-role values are left to is_carrier_entity."""
    column = model.entity_type
    return query.filter(or_(column.is_(None), ~column.in_(EXCLUDED_ENTITY_TYPES + [e.upper() for e in EXCLUDED_ENTITY_TYPES])))
