from alembic import op
import sqlalchemy as sa

revision = '0002_add_transactions'
down_revision = '0001_init'
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('checkout_request_id', sa.String(100), nullable=True, unique=True),
        sa.Column('merchant_request_id', sa.String(100), nullable=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('user_id', sa.Integer, nullable=True, index=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(10,2), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=False),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        sa.Column('transaction_date', sa.String(20), nullable=True),
        sa.Column('result_code', sa.Integer, nullable=True),
        sa.Column('result_desc', sa.String(255), nullable=True),
        sa.Column('account_reference', sa.String(12), nullable=True),
        sa.Column('transaction_desc', sa.String(13), nullable=True),
        sa.Column('error_message', sa.String(255), nullable=True),
        sa.Column('request_payload', sa.JSON, nullable=True),
        sa.Column('response_payload', sa.JSON, nullable=True),
        sa.Column('callback_payload', sa.JSON, nullable=True),
        sa.Column('query_response', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False)
    )
    op.create_table(
        'transaction_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('transaction_id', sa.Integer, sa.ForeignKey('transactions.id'), nullable=True, index=True),
        sa.Column('checkout_request_id', sa.String(100), nullable=True, index=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('result_code', sa.Integer, nullable=True),
        sa.Column('applied', sa.Boolean, nullable=False),
        sa.Column('payload', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False)
    )

def downgrade():
    op.drop_table('transaction_events')
    op.drop_table('transactions')
