from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

MOVEMENT_TYPES = ('RECEIPT', 'RESERVE', 'RELEASE', 'SALE', 'ADJUSTMENT', 'TRANSFER_IN', 'TRANSFER_OUT')
CHECKOUT_STATUSES = ('PENDING', 'RESERVED', 'FULFILLED', 'CANCELLED', 'EXPIRED')


def _partial(condition):
    return {'sqlite_where': sa.text(condition), 'postgresql_where': sa.text(condition)}


def upgrade():
    op.create_table(
        'items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('sku', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_items_sku', 'items', ['sku'], unique=True)
    op.create_index('ix_items_is_active', 'items', ['is_active'])

    op.create_table(
        'variants',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('item_id', sa.Integer, sa.ForeignKey('items.id'), nullable=False),
        sa.Column('variant_sku', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price_adjustment', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_variants_item_id', 'variants', ['item_id'])
    op.create_index('ix_variants_variant_sku', 'variants', ['variant_sku'], unique=True)
    op.create_index('ix_variants_is_active', 'variants', ['is_active'])

    op.create_table(
        'stock',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('item_id', sa.Integer, nullable=False),
        sa.Column('variant_id', sa.Integer, nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reserved_quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('warehouse_location', sa.String(50), nullable=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.CheckConstraint('quantity >= 0', name='ck_stock_quantity_non_negative'),
        sa.CheckConstraint('reserved_quantity >= 0', name='ck_stock_reserved_non_negative'),
        sa.CheckConstraint('reserved_quantity <= quantity', name='ck_stock_reserved_within_quantity'),
    )
    op.create_index('ix_stock_item_id', 'stock', ['item_id'])
    op.create_index('ix_stock_variant_id', 'stock', ['variant_id'])
    op.create_index('idx_stock_item_variant', 'stock', ['item_id', 'variant_id'], unique=True,
                    **_partial('variant_id IS NOT NULL'))
    op.create_index('idx_stock_item_only', 'stock', ['item_id'], unique=True,
                    **_partial('variant_id IS NULL'))
    op.create_index('idx_stock_warehouse_location', 'stock', ['warehouse_location'])

    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('stock_id', sa.Integer, sa.ForeignKey('stock.id'), nullable=False),
        sa.Column('movement_type', sa.Enum(*MOVEMENT_TYPES, name='movementtype', native_enum=False, length=20),
                  nullable=False),
        sa.Column('quantity_delta', sa.Integer, nullable=False),
        sa.Column('previous_quantity', sa.Integer, nullable=False),
        sa.Column('new_quantity', sa.Integer, nullable=False),
        sa.Column('reference_number', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('related_movement_id', sa.Integer, sa.ForeignKey('stock_movements.id'), nullable=True),
        sa.Column('release_movement_id', sa.Integer, sa.ForeignKey('stock_movements.id'), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
    )
    op.create_index('ix_stock_movements_stock_id', 'stock_movements', ['stock_id'])
    op.create_index('ix_stock_movements_movement_type', 'stock_movements', ['movement_type'])
    op.create_index('ix_stock_movements_reference_number', 'stock_movements', ['reference_number'])
    op.create_index('ix_stock_movements_created_by', 'stock_movements', ['created_by'])
    op.create_index('ix_stock_movements_created_at', 'stock_movements', ['created_at'])
    op.create_index('idx_movements_stock_created', 'stock_movements', ['stock_id', 'created_at'])
    op.create_index('idx_movements_type_created', 'stock_movements', ['movement_type', 'created_at'])
    op.create_index('uq_movements_release_id', 'stock_movements', ['release_movement_id'], unique=True,
                    **_partial('release_movement_id IS NOT NULL'))
    op.create_index('uq_movements_related_id', 'stock_movements', ['related_movement_id'], unique=True,
                    **_partial('related_movement_id IS NOT NULL'))

    op.create_table(
        'checkout_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('customer_id', sa.String(100), nullable=False),
        sa.Column('item_id', sa.Integer, nullable=False),
        sa.Column('variant_id', sa.Integer, nullable=True),
        sa.Column('stock_id', sa.Integer, sa.ForeignKey('stock.id'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price_per_unit', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('reservation_id', sa.Integer, sa.ForeignKey('stock_movements.id'), nullable=True),
        sa.Column('status', sa.Enum(*CHECKOUT_STATUSES, name='checkoutstatus', native_enum=False, length=20),
                  nullable=False),
        sa.Column('checkout_reference', sa.String(100), nullable=False),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('reserved_at', sa.DateTime, nullable=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_checkout_items_customer_id', 'checkout_items', ['customer_id'])
    op.create_index('ix_checkout_items_item_id', 'checkout_items', ['item_id'])
    op.create_index('ix_checkout_items_stock_id', 'checkout_items', ['stock_id'])
    op.create_index('ix_checkout_items_reservation_id', 'checkout_items', ['reservation_id'])
    op.create_index('ix_checkout_items_checkout_reference', 'checkout_items', ['checkout_reference'])
    op.create_index('idx_checkout_customer_status', 'checkout_items', ['customer_id', 'status'])
    op.create_index('idx_checkout_status_reserved_at', 'checkout_items', ['status', 'reserved_at'])


def downgrade():
    op.drop_table('checkout_items')
    op.drop_table('stock_movements')
    op.drop_table('stock')
    op.drop_table('variants')
    op.drop_table('items')
