"""SQL schemas for the ingestion tables (SQLite dialect)."""

# Transactions - one row per (identifier, vendor); price kept as TEXT for exact decimals
TRANSACTIONS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    identifier TEXT NOT NULL,
    vendor TEXT NOT NULL,
    date TEXT NOT NULL,
    processed_date TEXT,
    name TEXT NOT NULL DEFAULT '',
    price TEXT NOT NULL,
    category TEXT,
    category_source TEXT CHECK (category_source IN ('cache', 'rule', 'mapping', 'scraper')),
    rule_matched TEXT,
    type TEXT,
    transaction_type TEXT CHECK (transaction_type IN ('bank', 'credit_card')),
    account_number TEXT,
    installments_number INTEGER,
    installments_total INTEGER,
    original_amount TEXT,
    original_currency TEXT,
    charged_currency TEXT,
    memo TEXT,
    status TEXT DEFAULT 'completed',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (identifier, vendor)
);

CREATE INDEX IF NOT EXISTS idx_transactions_name ON transactions(LOWER(TRIM(name)));
CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date DESC);
CREATE INDEX IF NOT EXISTS idx_transactions_account ON transactions(vendor, account_number);
"""

# Vendor credentials - secret columns may hold cipher text
VENDOR_CREDENTIALS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS vendor_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vendor TEXT NOT NULL,
    nickname TEXT,
    username TEXT,
    password TEXT,
    id_number TEXT,
    card6_digits TEXT,
    user_code TEXT,
    bank_account_number TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_synced_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

# Card ownership - first scrape that sees an account number claims it
CARD_OWNERSHIP_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS card_ownership (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vendor TEXT NOT NULL,
    account_number TEXT NOT NULL,
    credential_id INTEGER NOT NULL REFERENCES vendor_credentials(id) ON DELETE CASCADE,
    linked_bank_account_id INTEGER REFERENCES vendor_credentials(id) ON DELETE SET NULL,
    custom_bank_account_number TEXT,
    custom_bank_account_nickname TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (vendor, account_number),
    CHECK (linked_bank_account_id IS NULL
           OR (custom_bank_account_number IS NULL AND custom_bank_account_nickname IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_card_ownership_credential ON card_ownership(credential_id);
"""

# Scrape events - the run ledger, also the only "scrape in flight" signal
SCRAPE_EVENTS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS scrape_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    triggered_by TEXT,
    vendor TEXT NOT NULL,
    start_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'started' CHECK (status IN ('started', 'success', 'failed', 'cancelled')),
    message TEXT,
    report_json TEXT,  -- JSON stored as text
    duration_seconds INTEGER,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_scrape_events_created_at ON scrape_events(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_scrape_events_status ON scrape_events(status, created_at DESC);
"""

CATEGORIZATION_RULES_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS categorization_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name_pattern TEXT NOT NULL,
    target_category TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (name_pattern, target_category)
);
"""

CATEGORY_MAPPINGS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS category_mappings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_category TEXT NOT NULL UNIQUE,
    target_category TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

# Key -> JSON value settings store
APP_SETTINGS_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,  -- JSON stored as text
    description TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

ALL_SCHEMAS = [
    TRANSACTIONS_TABLE_SCHEMA,
    VENDOR_CREDENTIALS_TABLE_SCHEMA,
    CARD_OWNERSHIP_TABLE_SCHEMA,
    SCRAPE_EVENTS_TABLE_SCHEMA,
    CATEGORIZATION_RULES_TABLE_SCHEMA,
    CATEGORY_MAPPINGS_TABLE_SCHEMA,
    APP_SETTINGS_TABLE_SCHEMA,
]


def create_all_tables(connection):
    """
    Execute all CREATE TABLE statements.

    Args:
        connection: sqlite3 connection
    """
    for schema in ALL_SCHEMAS:
        connection.executescript(schema)
    connection.commit()
