import structlog

from fintrack.db.pool import db_conn

logger = structlog.get_logger(__name__)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        name VARCHAR(100) NOT NULL,
        balance NUMERIC(15, 2) NOT NULL DEFAULT 0,
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts(user_id)",
    # At most one default account per owner.
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_default ON accounts(user_id) WHERE is_default",
    """
    CREATE TABLE IF NOT EXISTS categories (
        id UUID PRIMARY KEY,
        user_id UUID,
        name VARCHAR(100) NOT NULL,
        type VARCHAR(20) NOT NULL CHECK (type IN ('income', 'expense')),
        icon VARCHAR(50) NOT NULL DEFAULT '',
        color VARCHAR(7) NOT NULL DEFAULT '',
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_categories_user_id ON categories(user_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_categories_owner_name ON categories(user_id, type, name) WHERE user_id IS NOT NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_categories_system_name ON categories(type, name) WHERE user_id IS NULL",
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        account_id UUID NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
        category_id UUID NOT NULL REFERENCES categories(id) ON DELETE RESTRICT,
        type VARCHAR(20) NOT NULL CHECK (type IN ('income', 'expense')),
        amount NUMERIC(15, 2) NOT NULL CHECK (amount > 0),
        description TEXT NOT NULL DEFAULT '',
        date DATE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date DESC, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_category_id ON transactions(category_id)",
    """
    CREATE TABLE IF NOT EXISTS user_actions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        action VARCHAR(50) NOT NULL,
        entity VARCHAR(50) NOT NULL,
        entity_id UUID,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_actions_user_created ON user_actions(user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS api_keys (
        api_key_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        key_hash CHAR(64) NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ
    )
    """,
]

SYSTEM_CATEGORIES: list[tuple[str, str, str, str]] = [
    ("Salary", "income", "💰", "#4CAF50"),
    ("Freelance", "income", "💻", "#8BC34A"),
    ("Investments", "income", "📈", "#00BCD4"),
    ("Gifts", "income", "🎁", "#E91E63"),
    ("Other income", "income", "💵", "#9C27B0"),
    ("Groceries", "expense", "🛒", "#FF5722"),
    ("Transport", "expense", "🚗", "#795548"),
    ("Housing", "expense", "🏠", "#607D8B"),
    ("Entertainment", "expense", "🎮", "#FF9800"),
    ("Health", "expense", "💊", "#F44336"),
    ("Clothing", "expense", "👕", "#3F51B5"),
    ("Education", "expense", "📚", "#009688"),
    ("Restaurants", "expense", "🍽️", "#FFC107"),
    ("Utilities", "expense", "💡", "#9E9E9E"),
    ("Other expenses", "expense", "📦", "#673AB7"),
]


def seed_system_categories(cur) -> int:
    cur.execute("SELECT COUNT(*) AS n FROM categories WHERE user_id IS NULL")
    if int(cur.fetchone()["n"]) > 0:
        return 0
    for name, polarity, icon, color in SYSTEM_CATEGORIES:
        cur.execute(
            """
            INSERT INTO categories (id, user_id, name, type, icon, color, is_system)
            VALUES (gen_random_uuid(), NULL, %s, %s, %s, %s, true)
            """,
            (name, polarity, icon, color),
        )
    return len(SYSTEM_CATEGORIES)


def ensure_schema() -> None:
    with db_conn() as conn, conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        seeded = seed_system_categories(cur)
        conn.commit()
    logger.info("schema_ready", seeded_system_categories=seeded)
