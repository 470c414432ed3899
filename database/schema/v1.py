"""Schema v1 - Initial marketplace schema.

This version includes tables for:
- Users and products (owned by the registration side, read here)
- Marketplace listings and purchase requests
- Ownership records and the chain event log
- Idempotency log for submitted transactions
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'users',
            'columns': [
                {'name': 'user_id', 'type': 'SERIAL8', 'primary_key': True},
                {'name': 'username', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'role', 'type': 'TEXT', 'nullable': False, 'default': "'consumer'"},
                {'name': 'public_key', 'type': 'TEXT'},
                {'name': 'created_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "role IN ('admin', 'manufacturer', 'distributor', 'retailer', 'consumer')"
            ]
        },
        {
            'name': 'products',
            'columns': [
                {'name': 'product_id', 'type': 'SERIAL8', 'primary_key': True},
                {'name': 'registered_by', 'type': 'INT8'},
                {'name': 'serial_no', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'model', 'type': 'TEXT'},
                {'name': 'product_pda', 'type': 'TEXT'},
                {'name': 'tx_hash', 'type': 'TEXT'},
                {'name': 'track', 'type': 'BOOLEAN', 'nullable': False, 'default': 'true'},
                {'name': 'registered_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['registered_by'], 'references': 'users(user_id)'}
            ]
        },
        {
            'name': 'product_listing',
            'columns': [
                {'name': 'listing_id', 'type': 'SERIAL8', 'primary_key': True},
                {'name': 'product_id', 'type': 'INT8', 'nullable': False},
                {'name': 'seller_id', 'type': 'INT8', 'nullable': False},
                {'name': 'price', 'type': 'DECIMAL(12,2)', 'nullable': False},
                {'name': 'currency', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'available'"},
                {'name': 'notes', 'type': 'TEXT'},
                {'name': 'created_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "price > 0",
                "currency IN ('SGD', 'USD', 'EUR')",
                "status IN ('available', 'reserved', 'sold')"
            ],
            'foreign_keys': [
                {'columns': ['product_id'], 'references': 'products(product_id)'},
                {'columns': ['seller_id'], 'references': 'users(user_id)'}
            ],
            'indexes': [
                {'name': 'idx_listing_seller', 'columns': ['seller_id']},
                {'name': 'idx_listing_status', 'columns': ['status']},
                # At most one non-sold listing per product
                {'name': 'idx_listing_active_product', 'columns': ['product_id'],
                 'unique': True, 'where': "status != 'sold'"}
            ]
        },
        {
            'name': 'purchase_request',
            'columns': [
                {'name': 'request_id', 'type': 'SERIAL8', 'primary_key': True},
                {'name': 'product_id', 'type': 'INT8', 'nullable': False},
                {'name': 'listing_id', 'type': 'INT8'},
                {'name': 'seller_id', 'type': 'INT8', 'nullable': False},
                {'name': 'buyer_id', 'type': 'INT8', 'nullable': False},
                {'name': 'offered_price', 'type': 'DECIMAL(12,2)', 'nullable': False},
                {'name': 'offered_currency', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'proposed'"},
                {'name': 'payment_tx_hash', 'type': 'TEXT'},
                {'name': 'transfer_tx_hash', 'type': 'TEXT'},
                {'name': 'created_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "status IN ('proposed', 'accepted', 'paid', 'completed', 'rejected', 'cancelled')",
                "payment_tx_hash IS NULL OR status IN ('paid', 'completed')"
            ],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'product_listing(listing_id) ON DELETE SET NULL'},
                {'columns': ['buyer_id'], 'references': 'users(user_id)'}
            ],
            'indexes': [
                {'name': 'idx_request_buyer', 'columns': ['buyer_id']},
                {'name': 'idx_request_seller', 'columns': ['seller_id']},
                {'name': 'idx_request_payment', 'columns': ['payment_tx_hash'], 'unique': True},
                {'name': 'idx_request_active_product', 'columns': ['product_id'],
                 'unique': True, 'where': "status IN ('proposed', 'accepted', 'paid')"}
            ]
        },
        {
            'name': 'ownership',
            'columns': [
                {'name': 'ownership_id', 'type': 'SERIAL8', 'primary_key': True},
                {'name': 'product_id', 'type': 'INT8', 'nullable': False},
                {'name': 'owner_id', 'type': 'INT8', 'nullable': False},
                {'name': 'owner_public_key', 'type': 'TEXT'},
                {'name': 'start_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'end_on', 'type': 'TIMESTAMPTZ'},
                {'name': 'tx_hash', 'type': 'TEXT'}
            ],
            'foreign_keys': [
                {'columns': ['product_id'], 'references': 'products(product_id)'},
                {'columns': ['owner_id'], 'references': 'users(user_id)'}
            ],
            'indexes': [
                {'name': 'idx_ownership_owner', 'columns': ['owner_id']},
                # Exactly one open record per product
                {'name': 'idx_ownership_open_product', 'columns': ['product_id'],
                 'unique': True, 'where': 'end_on IS NULL'}
            ]
        },
        {
            'name': 'chain_events',
            'columns': [
                {'name': 'tx_hash', 'type': 'TEXT', 'primary_key': True},
                {'name': 'product_id', 'type': 'INT8', 'nullable': False},
                {'name': 'event', 'type': 'TEXT', 'nullable': False},
                {'name': 'from_user_id', 'type': 'INT8'},
                {'name': 'from_public_key', 'type': 'TEXT'},
                {'name': 'to_user_id', 'type': 'INT8', 'nullable': False},
                {'name': 'to_public_key', 'type': 'TEXT'},
                {'name': 'created_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "event IN ('REGISTER', 'TRANSFER', 'PURCHASE')"
            ],
            'indexes': [
                {'name': 'idx_chain_events_product', 'columns': ['product_id']}
            ]
        },
        {
            'name': 'operations',
            'columns': [
                {'name': 'idempotency_key', 'type': 'TEXT', 'primary_key': True},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'signature', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'submitted'"},
                {'name': 'created_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_on', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "kind IN ('transfer', 'payment')",
                "status IN ('submitted', 'completed')"
            ]
        }
    ],
    'migrations': []
}
