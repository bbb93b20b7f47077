import calendar
import csv
import hashlib
import json
import logging
import os
import re
import sqlite3
import time
import unicodedata
import xlrd
import urllib.parse
import urllib.request
from io import BytesIO
from datetime import datetime, date
from contextlib import contextmanager

from fastapi import FastAPI, Header, HTTPException, UploadFile, File, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel
from openpyxl import Workbook, load_workbook


DB_PATH = os.getenv(
    "DB_PATH",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "family_finance.db")),
)
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(",")
    if origin.strip()
]
PRICE_CACHE_TTL_MINUTES = int(os.getenv("PRICE_CACHE_TTL_MINUTES", "60"))
PRICE_REQUEST_DELAY_MS = int(os.getenv("PRICE_REQUEST_DELAY_MS", "500"))
PRICE_REQUEST_TIMEOUT = float(os.getenv("PRICE_REQUEST_TIMEOUT", "10"))
YAHOO_CHART_URL = os.getenv(
    "YAHOO_CHART_URL", "https://query1.finance.yahoo.com/v8/finance/chart"
).rstrip("/")
COINGECKO_URL = os.getenv(
    "COINGECKO_URL", "https://api.coingecko.com/api/v3/simple/price"
)
HTTP_USER_AGENT = "Mozilla/5.0 (compatible; family-finance/1.0)"


app = FastAPI(title="Family Finance API")
logger = logging.getLogger("family_finance")
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


BASE_CURRENCY = "EUR"
# Value of one unit in EUR.
EXCHANGE_RATES = {
    "EUR": 1.0,
    "USD": 0.926,
    "BRL": 0.165,
    "GBP": 1.176,
}
CURRENCY_SYMBOLS = {
    "EUR": "€",
    "USD": "$",
    "BRL": "R$",
    "GBP": "£",
}
ALLOWED_CURRENCIES = set(EXCHANGE_RATES)
PORTFOLIO_TOTAL_CURRENCIES = ["EUR", "USD", "BRL"]
USER_ROLES = {"admin", "user"}
FUND_TYPES = ["travel", "emergency", "car", "allowance"]
FUND_ENTRY_TYPES = {"income", "expense"}
CONTRIBUTION_ENTRY_NAME = "Aporte mensal"

EXPENSE_CATEGORIES = [
    ("supermercado", "Supermercado"),
    ("combustivel", "Combustivel"),
    ("aluguel", "Aluguel"),
    ("saude", "Saúde"),
    ("doacao", "Doação"),
    ("internet", "Internet"),
    ("netflix", "NetFlix"),
    ("amazon_prime", "Amazon Prime"),
    ("xbox", "Xbox"),
    ("telefone", "Telefone"),
    ("boleto", "Boletos"),
    ("financiamento", "Financiamento"),
    ("cursos", "Cursos"),
    ("outros", "Outros"),
    ("fundo_viagem", "Fundo de Viagem"),
    ("fundo_emergencia", "Fundo de Emergência"),
    ("reserva_carro", "Reserva do Carro"),
    ("mesada", "Mesada"),
    ("investimentos", "Investimentos"),
    ("alimentacao", "Alimentação"),
    ("transporte", "Transporte"),
    ("moradia", "Moradia"),
    ("educacao", "Educação"),
    ("lazer", "Lazer"),
    ("roupas", "Roupas"),
]
EXPENSE_DEFAULT_CATEGORY = "outros"
EXPENSE_CATEGORY_KEYWORDS = [
    ("supermercado", ["supermercado", "mercado", "carrefour", "pao de acucar", "assai", "atacadao", "lidl", "continente", "pingo doce", "aldi"]),
    ("combustivel", ["posto", "combustivel", "gasolina", "ipiranga", "petrobras", "shell", "galp", "repsol"]),
    ("aluguel", ["aluguel", "renda", "rent"]),
    ("saude", ["farmacia", "drogaria", "drogasil", "hospital", "clinica", "consulta", "laboratorio"]),
    ("doacao", ["doacao", "donation"]),
    ("internet", ["internet", "fibra", "banda larga"]),
    ("netflix", ["netflix"]),
    ("amazon_prime", ["amazon prime", "prime video"]),
    ("xbox", ["xbox"]),
    ("telefone", ["telefone", "celular", "vodafone", "claro", "vivo", "tim", "meo"]),
    ("boleto", ["boleto"]),
    ("financiamento", ["financiamento", "emprestimo", "prestacao"]),
    ("cursos", ["curso", "udemy", "alura", "coursera"]),
    ("alimentacao", ["restaurante", "ifood", "uber eats", "glovo", "padaria", "lanchonete", "cafe"]),
    ("transporte", ["uber", "99app", "metro", "onibus", "comboio", "estacionamento", "portagem", "pedagio"]),
    ("lazer", ["cinema", "spotify", "teatro", "ginasio", "academia"]),
    ("roupas", ["zara", "renner", "riachuelo", "h&m", "roupa"]),
]

MONTH_NAMES_PT = [
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
]
MONTH_ABBREVIATIONS_PT = ["Jan", "Fev", "Mar", "Abr", "Mai", "Jun", "Jul", "Ago", "Set", "Out", "Nov", "Dez"]

KNOWN_ETFS = {
    "CHIP": "CHIP.PA",
    "GLUX": "GLUX.PA",
    "HLQD": "HLQD.L",
    "INFR": "INFR.L",
    "SGLD": "SGLD.L",
    "VWCE": "VWCE.DE",
    "XAIX": "XAIX.DE",
}
KNOWN_CRYPTOS = {
    "BTC": "BTC-USD",
    "WBTC": "BTC-USD",
    "BTCB": "BTC-USD",
    "ETH": "ETH-USD",
    "WETH": "ETH-USD",
    "NEAR": "NEAR-USD",
    "BNB": "BNB-USD",
    "SOL": "SOL-USD",
    "ADA": "ADA-USD",
    "MATIC": "MATIC-USD",
    "DOT": "DOT-USD",
    "XRP": "XRP-USD",
    "AVAX": "AVAX-USD",
}
KNOWN_BRAZILIAN_STOCKS = {
    "ODPV3": "ODPV3.SA",
    "PETR4": "PETR4.SA",
    "VALE3": "VALE3.SA",
    "ITUB4": "ITUB4.SA",
    "BBDC4": "BBDC4.SA",
    "BBAS3": "BBAS3.SA",
    "WEGE3": "WEGE3.SA",
}
EXCHANGE_SUFFIX_HINTS = [
    (("SBF", "Paris"), ".PA"),
    (("LSEETF", "London"), ".L"),
    (("IBIS", "Deutsche", "Xetra"), ".DE"),
    (("AMS", "Amsterdam"), ".AS"),
]
CRYPTO_HINTS = ("Crypto", "Cripto", "Blockchain")

MARKET_CRYPTOS = [
    {"id": "bitcoin", "symbol": "BTC", "name": "Bitcoin"},
    {"id": "ethereum", "symbol": "ETH", "name": "Ethereum"},
    {"id": "ripple", "symbol": "XRP", "name": "XRP"},
    {"id": "cardano", "symbol": "ADA", "name": "Cardano"},
    {"id": "solana", "symbol": "SOL", "name": "Solana"},
]
MARKET_STOCKS = [
    {"id": "AAPL", "symbol": "AAPL", "name": "Apple Inc."},
    {"id": "MSFT", "symbol": "MSFT", "name": "Microsoft Corporation"},
    {"id": "AMZN", "symbol": "AMZN", "name": "Amazon.com, Inc."},
    {"id": "VUSA.L", "symbol": "VUSA", "name": "Vanguard S&P 500 UCITS ETF"},
    {"id": "EUNL.DE", "symbol": "EUNL", "name": "iShares Core MSCI World UCITS ETF"},
]


class UserCreateRequest(BaseModel):
    name: str
    email: str | None = None
    avatar: str | None = None
    role: str = "user"
    currency: str = BASE_CURRENCY
    salary: float | None = None
    salary_currency: str | None = None


class UserUpdateRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    avatar: str | None = None
    role: str | None = None
    currency: str | None = None


class UserSalaryRequest(BaseModel):
    salary: float
    currency: str = BASE_CURRENCY


class SalaryCreateRequest(BaseModel):
    user_id: int | None = None
    amount: float
    month: int
    year: int
    currency: str = BASE_CURRENCY


class SalaryUpdateRequest(BaseModel):
    amount: float | None = None
    month: int | None = None
    year: int | None = None
    currency: str | None = None


class ExpenseCreateRequest(BaseModel):
    user_id: int | None = None
    name: str
    description: str | None = None
    amount: float
    category: str = EXPENSE_DEFAULT_CATEGORY
    currency: str = BASE_CURRENCY
    date: str | None = None


class ExpenseUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    amount: float | None = None
    category: str | None = None
    currency: str | None = None
    date: str | None = None


class ExpenseImportRow(BaseModel):
    cells: list[str | float | int | None]
    include: bool = True


class ExpenseImportCommitRequest(BaseModel):
    source_file: str
    file_hash: str
    columns: list[str]
    mapping: dict[str, int | None]
    rows: list[ExpenseImportRow]
    user_id: int | None = None
    currency: str | None = None


class InvestmentCreateRequest(BaseModel):
    user_id: int | None = None
    asset: str
    quantity: float
    unit_price: float
    currency: str = BASE_CURRENCY
    description: str | None = None
    yahoo_symbol: str | None = None
    date: str | None = None


class InvestmentUpdateRequest(BaseModel):
    asset: str | None = None
    quantity: float | None = None
    unit_price: float | None = None
    currency: str | None = None
    description: str | None = None
    yahoo_symbol: str | None = None


class PriceRefreshRequest(BaseModel):
    investment_ids: list[int] | None = None
    force: bool = False


class FundEntryRequest(BaseModel):
    user_id: int | None = None
    type: str = "income"
    amount: float
    name: str | None = None
    description: str | None = None
    category: str | None = None
    currency: str = BASE_CURRENCY
    date: str | None = None


class TravelFundParticipant(BaseModel):
    user_id: int
    contribution: float = 0.0


class TravelFundCreateRequest(BaseModel):
    user_id: int | None = None
    name: str
    description: str | None = None
    target_amount: float | None = None
    deadline: str | None = None
    currency: str = BASE_CURRENCY
    participants: list[TravelFundParticipant] | None = None
    total: float | None = None
    current_amount: float | None = None


class TravelFundUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    target_amount: float | None = None
    deadline: str | None = None
    currency: str | None = None
    participants: list[TravelFundParticipant] | None = None
    total: float | None = None
    current_amount: float | None = None


class MonthlyContributionCreateRequest(BaseModel):
    user_id: int | None = None
    fund_type: str
    fund_id: str | None = None
    amount: float
    day_of_month: int = 1
    is_active: bool = True
    currency: str = BASE_CURRENCY


class MonthlyContributionUpdateRequest(BaseModel):
    fund_type: str | None = None
    fund_id: str | None = None
    amount: float | None = None
    day_of_month: int | None = None
    is_active: bool | None = None
    currency: str | None = None


@contextmanager
def _db_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _init_db() -> None:
    with _db_connection() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                name_key TEXT NOT NULL UNIQUE,
                email TEXT,
                avatar TEXT,
                role TEXT NOT NULL DEFAULT 'user',
                currency TEXT NOT NULL DEFAULT 'EUR',
                salary REAL,
                salary_currency TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS salaries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                amount REAL NOT NULL,
                month INTEGER NOT NULL,
                year INTEGER NOT NULL,
                currency TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS expenses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                amount REAL NOT NULL,
                category TEXT NOT NULL,
                currency TEXT NOT NULL,
                import_id INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS expense_imports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                source_file TEXT NOT NULL,
                file_hash TEXT NOT NULL,
                rows_imported INTEGER NOT NULL,
                imported_at TEXT NOT NULL,
                UNIQUE(user_id, file_hash)
            );
            CREATE TABLE IF NOT EXISTS investments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                asset TEXT NOT NULL,
                quantity REAL NOT NULL,
                unit_price REAL NOT NULL,
                currency TEXT NOT NULL,
                description TEXT,
                yahoo_symbol TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS asset_prices (
                symbol TEXT PRIMARY KEY,
                price REAL NOT NULL,
                currency TEXT,
                change_percent REAL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS fund_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                fund_type TEXT NOT NULL,
                entry_type TEXT NOT NULL,
                amount REAL NOT NULL,
                currency TEXT NOT NULL,
                name TEXT,
                description TEXT,
                category TEXT,
                source TEXT NOT NULL DEFAULT 'manual',
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS travel_funds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                target_amount REAL,
                deadline TEXT,
                currency TEXT NOT NULL,
                total REAL NOT NULL,
                current_amount REAL NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS travel_fund_participants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fund_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                contribution REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS monthly_contributions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                fund_type TEXT NOT NULL,
                fund_id TEXT,
                amount REAL NOT NULL,
                day_of_month INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                currency TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS contribution_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contribution_id INTEGER NOT NULL,
                month TEXT NOT NULL,
                entry_id INTEGER NOT NULL,
                travel_fund_id INTEGER,
                travel_amount REAL,
                applied_at TEXT NOT NULL,
                UNIQUE(contribution_id, month)
            );
            CREATE INDEX IF NOT EXISTS idx_expenses_user_date
                ON expenses(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_fund_entries_type_user
                ON fund_entries(fund_type, user_id);
            """
        )


def _normalize_text(value: str | None) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    normalized = unicodedata.normalize("NFKD", value)
    cleaned = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return cleaned.strip().lower()


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _normalize_currency(value: str | None, fallback: str = BASE_CURRENCY) -> str:
    currency = (value or fallback).strip().upper()
    if currency not in ALLOWED_CURRENCIES:
        raise HTTPException(status_code=400, detail="Unsupported currency.")
    return currency


def _normalize_role(value: str | None) -> str:
    role = (value or "user").strip().lower()
    if role not in USER_ROLES:
        raise HTTPException(status_code=400, detail="Role must be admin or user.")
    return role


def _normalize_fund_type(value: str | None) -> str:
    fund_type = (value or "").strip().lower()
    if fund_type not in FUND_TYPES:
        raise HTTPException(status_code=404, detail="Fund not found.")
    return fund_type


def _convert_currency(
    amount: float,
    from_currency: str = BASE_CURRENCY,
    to_currency: str = BASE_CURRENCY,
    digits: int = 2,
) -> float:
    if from_currency == to_currency:
        return amount
    from_rate = EXCHANGE_RATES.get(from_currency, 1.0)
    to_rate = EXCHANGE_RATES.get(to_currency, 1.0)
    return round(amount * from_rate / to_rate, digits)


def _convert_to_eur(amount: float, from_currency: str = BASE_CURRENCY) -> float:
    return _convert_currency(amount, from_currency, BASE_CURRENCY)


def _currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, currency)


def _parse_number(value: str | float | int | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = text.replace("R$", "").replace("€", "").replace("$", "").replace("£", "")
    for code in ALLOWED_CURRENCIES:
        text = text.replace(code, "")
    text = text.replace("\xa0", "").replace(" ", "")
    text = re.sub(r"[^0-9,.-]", "", text)
    if not text:
        return None
    if text.count(",") > 0 and text.count(".") > 0:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "")
            text = text.replace(",", ".")
        else:
            text = text.replace(",", "")
    elif text.count(",") > 0:
        text = text.replace(",", ".")
    if text.count(".") > 1:
        parts = text.split(".")
        text = "".join(parts[:-1]) + "." + parts[-1]
    try:
        parsed = float(text)
    except ValueError:
        return None
    return -parsed if negative else parsed


def _to_datetime(value: str | datetime | None) -> datetime:
    if not value:
        return datetime.min
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return datetime.min
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    match = re.search(r"(\d{2})[-/](\d{2})[-/](\d{4})", text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return datetime(year, month, day)
        except ValueError:
            return datetime.min
    return datetime.min


def _parse_transaction_date(value: str | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text[:10], fmt).date().isoformat()
        except ValueError:
            continue
    timestamp = _to_datetime(text)
    if timestamp == datetime.min:
        return None
    return timestamp.date().isoformat()


def _entry_timestamp(value: str | None) -> str:
    if not value or not str(value).strip():
        return datetime.utcnow().isoformat()
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        pass
    parsed = _parse_transaction_date(text)
    if not parsed:
        raise HTTPException(status_code=400, detail="Invalid date.")
    return datetime.fromisoformat(parsed).isoformat()


def _month_key(value: str | None) -> str | None:
    if not value:
        return None
    timestamp = _to_datetime(value)
    if timestamp == datetime.min:
        return None
    return timestamp.strftime("%Y-%m")


def _utc_today() -> date:
    return datetime.utcnow().date()


def _parse_month(value: str | None, today: date | None = None) -> tuple[int, int]:
    if not value:
        today = today or _utc_today()
        return today.year, today.month
    match = re.fullmatch(r"(\d{4})-(\d{2})", value.strip())
    if not match:
        raise HTTPException(status_code=400, detail="Invalid month, expected YYYY-MM.")
    year, month = int(match.group(1)), int(match.group(2))
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Invalid month, expected YYYY-MM.")
    return year, month


def _month_label(month_key: str) -> str:
    year, month = month_key.split("-")
    return f"{MONTH_NAMES_PT[int(month) - 1]} de {year}"


def _user_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "email": row["email"],
        "avatar": row["avatar"],
        "role": row["role"],
        "currency": row["currency"],
        "salary": float(row["salary"]) if row["salary"] is not None else None,
        "salary_currency": row["salary_currency"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _get_user(user_id: int) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def _find_user_by_name(name: str) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute(
            "SELECT * FROM users WHERE name_key = ?", (_normalize_text(name),)
        ).fetchone()


def _list_users() -> list[dict]:
    with _db_connection() as conn:
        rows = conn.execute("SELECT * FROM users ORDER BY name_key ASC").fetchall()
    return [_user_to_dict(row) for row in rows]


def _create_user(payload: UserCreateRequest) -> dict:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="User name is required.")
    role = _normalize_role(payload.role)
    currency = _normalize_currency(payload.currency)
    salary_currency = None
    if payload.salary is not None:
        if payload.salary < 0:
            raise HTTPException(status_code=400, detail="Salary cannot be negative.")
        salary_currency = _normalize_currency(payload.salary_currency, currency)
    now = datetime.utcnow().isoformat()
    try:
        with _db_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO users (
                    name, name_key, email, avatar, role, currency,
                    salary, salary_currency, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    _normalize_text(name),
                    _normalize_optional_text(payload.email),
                    _normalize_optional_text(payload.avatar),
                    role,
                    currency,
                    payload.salary,
                    salary_currency,
                    now,
                    now,
                ),
            )
            user_id = cursor.lastrowid
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail="User already exists.") from exc
    return _user_to_dict(_get_user(user_id))


def _update_user(user_id: int, payload: UserUpdateRequest) -> dict | None:
    user = _get_user(user_id)
    if not user:
        return None
    changes = payload.model_dump(exclude_unset=True)
    name = user["name"]
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="User name is required.")
    role = _normalize_role(changes["role"]) if changes.get("role") else user["role"]
    currency = (
        _normalize_currency(changes["currency"]) if changes.get("currency") else user["currency"]
    )
    email = _normalize_optional_text(changes["email"]) if "email" in changes else user["email"]
    avatar = _normalize_optional_text(changes["avatar"]) if "avatar" in changes else user["avatar"]
    try:
        with _db_connection() as conn:
            conn.execute(
                """
                UPDATE users
                SET name = ?, name_key = ?, email = ?, avatar = ?, role = ?,
                    currency = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    name,
                    _normalize_text(name),
                    email,
                    avatar,
                    role,
                    currency,
                    datetime.utcnow().isoformat(),
                    user_id,
                ),
            )
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail="User already exists.") from exc
    return _user_to_dict(_get_user(user_id))


def _set_user_salary(user_id: int, salary: float | None, currency: str | None) -> dict | None:
    if not _get_user(user_id):
        return None
    if salary is not None and salary < 0:
        raise HTTPException(status_code=400, detail="Salary cannot be negative.")
    salary_currency = _normalize_currency(currency) if salary is not None else None
    with _db_connection() as conn:
        conn.execute(
            """
            UPDATE users
            SET salary = ?, salary_currency = ?, updated_at = ?
            WHERE id = ?
            """,
            (salary, salary_currency, datetime.utcnow().isoformat(), user_id),
        )
    return _user_to_dict(_get_user(user_id))


def _delete_user(user_id: int) -> bool:
    with _db_connection() as conn:
        row = conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            return False
        conn.execute(
            """
            DELETE FROM contribution_runs
            WHERE contribution_id IN (
                SELECT id FROM monthly_contributions WHERE user_id = ?
            )
            """,
            (user_id,),
        )
        conn.execute(
            """
            DELETE FROM travel_fund_participants
            WHERE user_id = ?
               OR fund_id IN (SELECT id FROM travel_funds WHERE owner_id = ?)
            """,
            (user_id, user_id),
        )
        conn.execute("DELETE FROM travel_funds WHERE owner_id = ?", (user_id,))
        for table in (
            "salaries",
            "expenses",
            "expense_imports",
            "investments",
            "fund_entries",
            "monthly_contributions",
        ):
            conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
        conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    return True


def _require_user(x_user_id: str | None) -> sqlite3.Row:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    try:
        user_id = int(str(x_user_id).strip())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid X-User-Id header.") from exc
    user = _get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user.")
    return user


def _is_admin(user: sqlite3.Row) -> bool:
    return user["role"] == "admin"


def _can_grant_admin(x_user_id: str | None) -> bool:
    """The first user bootstraps the household as admin; later admins need an admin caller."""
    with _db_connection() as conn:
        has_users = conn.execute("SELECT 1 FROM users LIMIT 1").fetchone()
    if not has_users:
        return True
    if not x_user_id:
        return False
    return _is_admin(_require_user(x_user_id))


def _can_access(user: sqlite3.Row, owner_id: int) -> bool:
    return _is_admin(user) or owner_id == user["id"]


def _scope_user_id(user: sqlite3.Row, requested: int | None) -> int | None:
    """Resolve the user filter for a read; None means every user (admins only)."""
    if _is_admin(user):
        if requested is not None and not _get_user(requested):
            raise HTTPException(status_code=404, detail="User not found.")
        return requested
    if requested is not None and requested != user["id"]:
        raise HTTPException(status_code=404, detail="User not found.")
    return user["id"]


def _owner_for_write(user: sqlite3.Row, requested: int | None) -> int:
    owner_id = requested if requested is not None else user["id"]
    if owner_id == user["id"]:
        return owner_id
    if not _is_admin(user):
        raise HTTPException(status_code=403, detail="Not allowed to write for another user.")
    if not _get_user(owner_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return owner_id


def _salary_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "amount": float(row["amount"]),
        "month": row["month"],
        "year": row["year"],
        "currency": row["currency"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _validate_salary(amount: float, month: int, year: int) -> None:
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Salary amount must be greater than 0.")
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
    if year < 1900 or year > 9999:
        raise HTTPException(status_code=400, detail="Invalid year.")


def _get_salary(salary_id: int) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute("SELECT * FROM salaries WHERE id = ?", (salary_id,)).fetchone()


def _create_salary(user_id: int, payload: SalaryCreateRequest) -> dict:
    _validate_salary(payload.amount, payload.month, payload.year)
    currency = _normalize_currency(payload.currency)
    now = datetime.utcnow().isoformat()
    with _db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO salaries (user_id, amount, month, year, currency, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, payload.amount, payload.month, payload.year, currency, now, now),
        )
        salary_id = cursor.lastrowid
    return _salary_to_dict(_get_salary(salary_id))


def _list_salaries(
    user_id: int | None,
    year: int | None = None,
    month: int | None = None,
) -> list[dict]:
    query = ["SELECT * FROM salaries", "WHERE 1 = 1"]
    params: list[object] = []
    if user_id is not None:
        query.append("AND user_id = ?")
        params.append(user_id)
    if year is not None:
        query.append("AND year = ?")
        params.append(year)
    if month is not None:
        query.append("AND month = ?")
        params.append(month)
    query.append("ORDER BY year DESC, month DESC, id DESC")
    with _db_connection() as conn:
        rows = conn.execute("\n".join(query), params).fetchall()
    return [_salary_to_dict(row) for row in rows]


def _update_salary(salary_id: int, payload: SalaryUpdateRequest) -> dict:
    current = _get_salary(salary_id)
    changes = payload.model_dump(exclude_unset=True)
    amount = changes.get("amount") if changes.get("amount") is not None else current["amount"]
    month = changes.get("month") if changes.get("month") is not None else current["month"]
    year = changes.get("year") if changes.get("year") is not None else current["year"]
    currency = (
        _normalize_currency(changes["currency"]) if changes.get("currency") else current["currency"]
    )
    _validate_salary(amount, month, year)
    with _db_connection() as conn:
        conn.execute(
            """
            UPDATE salaries
            SET amount = ?, month = ?, year = ?, currency = ?, updated_at = ?
            WHERE id = ?
            """,
            (amount, month, year, currency, datetime.utcnow().isoformat(), salary_id),
        )
    return _salary_to_dict(_get_salary(salary_id))


def _delete_salary(salary_id: int) -> bool:
    with _db_connection() as conn:
        cursor = conn.execute("DELETE FROM salaries WHERE id = ?", (salary_id,))
    return cursor.rowcount > 0


def _annual_salaries(user_id: int | None, year: int) -> dict:
    items = _list_salaries(user_id, year=year)
    months = [{"month": month, "total": 0.0} for month in range(1, 13)]
    for item in items:
        months[item["month"] - 1]["total"] += _convert_to_eur(item["amount"], item["currency"])
    for row in months:
        row["total"] = round(row["total"], 2)
    return {
        "year": year,
        "items": items,
        "months": months,
        "total": round(sum(row["total"] for row in months), 2),
    }


def _expense_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "description": row["description"] or "",
        "amount": float(row["amount"]),
        "category": row["category"],
        "currency": row["currency"],
        "import_id": row["import_id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _match_expense_category(value: str | None) -> str | None:
    key = _normalize_text(value)
    for category, label in EXPENSE_CATEGORIES:
        if key == category or key == _normalize_text(label):
            return category
    return None


def _normalize_expense_category(value: str | None) -> str:
    if not _normalize_text(value):
        return EXPENSE_DEFAULT_CATEGORY
    category = _match_expense_category(value)
    if category:
        return category
    raise HTTPException(status_code=400, detail="Unknown expense category.")


def _expense_amount(value: float | None) -> float:
    if not value:
        raise HTTPException(status_code=400, detail="Amount must be different from 0.")
    return -abs(float(value))


def _get_expense(expense_id: int) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute("SELECT * FROM expenses WHERE id = ?", (expense_id,)).fetchone()


def _create_expense(user_id: int, payload: ExpenseCreateRequest) -> dict:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Expense name is required.")
    amount = _expense_amount(payload.amount)
    category = _normalize_expense_category(payload.category)
    currency = _normalize_currency(payload.currency)
    created_at = _entry_timestamp(payload.date)
    with _db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO expenses (
                user_id, name, description, amount, category, currency,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                name,
                _normalize_optional_text(payload.description) or "",
                amount,
                category,
                currency,
                created_at,
                datetime.utcnow().isoformat(),
            ),
        )
        expense_id = cursor.lastrowid
    return _expense_to_dict(_get_expense(expense_id))


def _update_expense(expense_id: int, payload: ExpenseUpdateRequest) -> dict:
    current = _get_expense(expense_id)
    changes = payload.model_dump(exclude_unset=True)
    name = current["name"]
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Expense name is required.")
    amount = _expense_amount(changes["amount"]) if "amount" in changes else current["amount"]
    category = (
        _normalize_expense_category(changes["category"])
        if "category" in changes
        else current["category"]
    )
    currency = (
        _normalize_currency(changes["currency"]) if changes.get("currency") else current["currency"]
    )
    description = (
        _normalize_optional_text(changes["description"]) or ""
        if "description" in changes
        else current["description"]
    )
    created_at = _entry_timestamp(changes["date"]) if changes.get("date") else current["created_at"]
    with _db_connection() as conn:
        conn.execute(
            """
            UPDATE expenses
            SET name = ?, description = ?, amount = ?, category = ?, currency = ?,
                created_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                name,
                description,
                amount,
                category,
                currency,
                created_at,
                datetime.utcnow().isoformat(),
                expense_id,
            ),
        )
    return _expense_to_dict(_get_expense(expense_id))


def _delete_expense(expense_id: int) -> bool:
    with _db_connection() as conn:
        cursor = conn.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))
    return cursor.rowcount > 0


def _list_expenses(
    user_id: int | None,
    month: str | None = None,
    category: str | None = None,
    year: int | None = None,
) -> list[dict]:
    query = ["SELECT * FROM expenses", "WHERE 1 = 1"]
    params: list[object] = []
    if user_id is not None:
        query.append("AND user_id = ?")
        params.append(user_id)
    if month:
        query.append("AND substr(created_at, 1, 7) = ?")
        params.append(month)
    if year is not None:
        query.append("AND substr(created_at, 1, 4) = ?")
        params.append(f"{year:04d}")
    if category:
        query.append("AND category = ?")
        params.append(_normalize_expense_category(category))
    query.append("ORDER BY created_at DESC, id DESC")
    with _db_connection() as conn:
        rows = conn.execute("\n".join(query), params).fetchall()
    return [_expense_to_dict(row) for row in rows]


def _expense_history(user_id: int | None, today: date | None = None) -> dict:
    today = today or _utc_today()
    current_key = f"{today.year:04d}-{today.month:02d}"
    current: list[dict] = []
    previous: dict[str, list[dict]] = {}
    for expense in _list_expenses(user_id):
        key = _month_key(expense["created_at"])
        if key == current_key:
            current.append(expense)
            continue
        if not key or key > current_key:
            continue
        previous.setdefault(key, []).append(expense)
    groups = []
    for key in sorted(previous.keys(), reverse=True):
        items = previous[key]
        groups.append(
            {
                "month": key,
                "label": _month_label(key),
                "items": items,
                "total": round(sum(abs(_convert_to_eur(item["amount"], item["currency"])) for item in items), 2),
            }
        )
    return {
        "month": current_key,
        "current_month": current,
        "current_total": round(
            sum(abs(_convert_to_eur(item["amount"], item["currency"])) for item in current), 2
        ),
        "previous_months": groups,
    }


def _fix_mojibake(value: str | None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    if "Ã" in value or "Â" in value:
        try:
            return value.encode("latin-1").decode("utf-8")
        except UnicodeError:
            return value
    return value


def _detect_delimiter(sample: str) -> str:
    for delimiter in (";", "\t", "|", ","):
        if delimiter in sample:
            return delimiter
    return ","


def _load_rows_from_text(text: str) -> list[list[str | None]]:
    lines = text.splitlines()
    sample = lines[0] if lines else ""
    delimiter = _detect_delimiter(sample)
    return [[_fix_mojibake(cell) for cell in row] for row in csv.reader(lines, delimiter=delimiter)]


def _load_rows_from_excel(file_bytes: bytes, filename: str) -> list[list[str | float | int | None]]:
    rows: list[list[str | float | int | None]] = []
    if filename.lower().endswith(".xls"):
        book = xlrd.open_workbook(file_contents=file_bytes)
        sheet = book.sheet_by_index(0)
        for row_idx in range(sheet.nrows):
            rows.append([_fix_mojibake(cell) for cell in sheet.row_values(row_idx)])
        return rows
    workbook = load_workbook(BytesIO(file_bytes), data_only=True)
    sheet = workbook.active
    for row in sheet.iter_rows(values_only=True):
        rows.append([_fix_mojibake(cell) for cell in row])
    return rows


def _load_import_rows(
    file_bytes: bytes | None, filename: str | None, text: str | None
) -> list[list[str | float | int | None]]:
    if text:
        return _load_rows_from_text(text)
    if not file_bytes or not filename:
        return []
    if file_bytes[:2] == b"PK":
        return _load_rows_from_excel(file_bytes, f"{filename}.xlsx")
    if filename.lower().endswith((".xls", ".xlsx")):
        return _load_rows_from_excel(file_bytes, filename)
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            return _load_rows_from_text(file_bytes.decode(encoding))
        except UnicodeError:
            continue
    return []


def _trim_empty_rows(rows: list[list[str | float | int | None]]) -> list[list]:
    return [
        row
        for row in rows
        if any(str(cell).strip() if cell is not None else "" for cell in row)
    ]


IMPORT_HEADER_KEYWORDS = {
    "date": {"data", "date", "data lancamento", "data movimento"},
    "description": {"descricao", "description", "historico", "lancamento", "estabelecimento"},
    "amount": {"valor", "montante", "amount"},
    "debit": {"debito", "debit"},
    "credit": {"credito", "credit"},
    "currency": {"moeda", "currency"},
    "category": {"categoria", "category"},
}


def _find_header_row(rows: list[list[str | float | int | None]]) -> int | None:
    for idx, row in enumerate(rows[:40]):
        hits = 0
        for cell in row:
            if not cell or not isinstance(cell, str):
                continue
            key = _normalize_text(cell)
            if any(word in key for words in IMPORT_HEADER_KEYWORDS.values() for word in words):
                hits += 1
        if hits >= 2:
            return idx
    return None


def _suggest_import_mapping(columns: list[str]) -> dict[str, int | None]:
    mapping: dict[str, int | None] = {key: None for key in IMPORT_HEADER_KEYWORDS}
    for idx, label in enumerate(columns):
        key = _normalize_text(label)
        if mapping["date"] is None and ("data" in key or "date" in key):
            mapping["date"] = idx
            continue
        if mapping["description"] is None and any(
            word in key for word in ("descr", "historico", "estabelecimento")
        ):
            mapping["description"] = idx
            continue
        if mapping["currency"] is None and ("moeda" in key or "curr" in key):
            mapping["currency"] = idx
            continue
        if mapping["category"] is None and ("categ" in key):
            mapping["category"] = idx
            continue
        if mapping["debit"] is None and "deb" in key:
            mapping["debit"] = idx
            continue
        if mapping["credit"] is None and "cred" in key:
            mapping["credit"] = idx
            continue
        if mapping["amount"] is None and any(word in key for word in ("valor", "montante", "amount")):
            mapping["amount"] = idx
    return mapping


def _build_import_items(
    rows: list[list[str | float | int | None]],
    columns: list[str],
    mapping: dict[str, int | None],
    currency_fallback: str,
) -> tuple[list[dict], list[str]]:
    warnings: list[str] = []
    items: list[dict] = []
    mapping = {key: value if isinstance(value, int) else None for key, value in mapping.items()}
    for idx, row in enumerate(rows):
        cells = [cell if cell is not None else "" for cell in row]

        def cell_at(key: str) -> str | float | int | None:
            col_idx = mapping.get(key)
            if col_idx is None or col_idx >= len(cells):
                return None
            return cells[col_idx]

        date_value = _parse_transaction_date(cell_at("date"))
        description_value = _normalize_optional_text(_fix_mojibake(cell_at("description")))
        debit_value = _parse_number(cell_at("debit"))
        credit_value = _parse_number(cell_at("credit"))
        if debit_value is not None or credit_value is not None:
            amount_value = (credit_value or 0.0) - abs(debit_value or 0.0)
        else:
            amount_value = _parse_number(cell_at("amount"))
        currency_value = (
            _normalize_optional_text(cell_at("currency")) or currency_fallback
        ).upper()
        if not date_value or not description_value or amount_value is None:
            warnings.append(f"Row {idx + 1} skipped: missing required values.")
            continue
        if currency_value not in ALLOWED_CURRENCIES:
            warnings.append(f"Row {idx + 1} uses unsupported currency {currency_value}.")
            currency_value = currency_fallback
        items.append(
            {
                "date": date_value,
                "description": description_value,
                "amount": float(amount_value),
                "currency": currency_value,
                "category": _guess_expense_category(description_value, cell_at("category")),
                "raw": dict(zip(columns, cells)),
            }
        )
    return items, warnings


def _guess_expense_category(description: str | None, explicit: str | float | int | None = None) -> str:
    if explicit is not None:
        category = _match_expense_category(str(explicit))
        if category:
            return category
    text = _normalize_text(description)
    for category, keywords in EXPENSE_CATEGORY_KEYWORDS:
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", text):
                return category
    return EXPENSE_DEFAULT_CATEGORY


def _build_import_preview(
    rows: list[list[str | float | int | None]],
    currency_fallback: str,
) -> tuple[list[str], list[dict], dict[str, int | None], list[str]]:
    rows = _trim_empty_rows(rows)
    header_row = _find_header_row(rows)
    if header_row is None:
        return [], [], _suggest_import_mapping([]), ["No header row detected."]
    columns = [
        _normalize_optional_text(_fix_mojibake(cell)) or "" for cell in rows[header_row]
    ]
    data_rows = rows[header_row + 1 :]
    mapping = _suggest_import_mapping(columns)
    _, warnings = _build_import_items(data_rows, columns, mapping, currency_fallback)
    preview_rows = [
        {
            "cells": [
                cell.isoformat() if isinstance(cell, (datetime, date)) else (cell if cell is not None else "")
                for cell in row
            ],
            "include": True,
        }
        for row in data_rows
    ]
    return columns, preview_rows, mapping, warnings


def _save_expense_import(
    user_id: int, source_file: str, file_hash: str, items: list[dict]
) -> dict:
    now = datetime.utcnow().isoformat()
    with _db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO expense_imports (user_id, source_file, file_hash, rows_imported, imported_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, source_file, file_hash, len(items), now),
        )
        import_id = cursor.lastrowid
        for item in items:
            name = item["description"][:60]
            conn.execute(
                """
                INSERT INTO expenses (
                    user_id, name, description, amount, category, currency,
                    import_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    name,
                    item["description"],
                    -abs(item["amount"]),
                    item["category"],
                    item["currency"],
                    import_id,
                    datetime.fromisoformat(item["date"]).isoformat(),
                    now,
                ),
            )
    return {"import_id": import_id, "imported_at": now, "items": len(items)}


def _investment_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "asset": row["asset"],
        "quantity": float(row["quantity"]),
        "unit_price": float(row["unit_price"]),
        "currency": row["currency"],
        "description": row["description"] or "",
        "yahoo_symbol": row["yahoo_symbol"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _validate_investment(asset: str, quantity: float, unit_price: float) -> None:
    if not asset:
        raise HTTPException(status_code=400, detail="Asset is required.")
    if quantity <= 0:
        raise HTTPException(status_code=400, detail="Quantity must be greater than 0.")
    if unit_price < 0:
        raise HTTPException(status_code=400, detail="Unit price cannot be negative.")


def _get_investment(investment_id: int) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute(
            "SELECT * FROM investments WHERE id = ?", (investment_id,)
        ).fetchone()


def _create_investment(user_id: int, payload: InvestmentCreateRequest) -> dict:
    asset = payload.asset.strip().upper()
    _validate_investment(asset, payload.quantity, payload.unit_price)
    currency = _normalize_currency(payload.currency)
    symbol = _normalize_optional_text(payload.yahoo_symbol)
    created_at = _entry_timestamp(payload.date)
    with _db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO investments (
                user_id, asset, quantity, unit_price, currency, description,
                yahoo_symbol, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                asset,
                payload.quantity,
                payload.unit_price,
                currency,
                _normalize_optional_text(payload.description),
                symbol.upper() if symbol else None,
                created_at,
                datetime.utcnow().isoformat(),
            ),
        )
        investment_id = cursor.lastrowid
    return _investment_to_dict(_get_investment(investment_id))


def _update_investment(investment_id: int, payload: InvestmentUpdateRequest) -> dict:
    current = _get_investment(investment_id)
    changes = payload.model_dump(exclude_unset=True)
    asset = (changes.get("asset") or current["asset"]).strip().upper()
    quantity = changes["quantity"] if changes.get("quantity") is not None else current["quantity"]
    unit_price = (
        changes["unit_price"] if changes.get("unit_price") is not None else current["unit_price"]
    )
    _validate_investment(asset, quantity, unit_price)
    currency = (
        _normalize_currency(changes["currency"]) if changes.get("currency") else current["currency"]
    )
    description = (
        _normalize_optional_text(changes["description"])
        if "description" in changes
        else current["description"]
    )
    symbol = current["yahoo_symbol"]
    if "yahoo_symbol" in changes:
        symbol = _normalize_optional_text(changes["yahoo_symbol"])
        symbol = symbol.upper() if symbol else None
    with _db_connection() as conn:
        conn.execute(
            """
            UPDATE investments
            SET asset = ?, quantity = ?, unit_price = ?, currency = ?, description = ?,
                yahoo_symbol = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                asset,
                quantity,
                unit_price,
                currency,
                description,
                symbol,
                datetime.utcnow().isoformat(),
                investment_id,
            ),
        )
    return _investment_to_dict(_get_investment(investment_id))


def _delete_investment(investment_id: int) -> bool:
    with _db_connection() as conn:
        cursor = conn.execute("DELETE FROM investments WHERE id = ?", (investment_id,))
    return cursor.rowcount > 0


def _list_investments(user_id: int | None, investment_ids: list[int] | None = None) -> list[dict]:
    query = ["SELECT * FROM investments", "WHERE 1 = 1"]
    params: list[object] = []
    if user_id is not None:
        query.append("AND user_id = ?")
        params.append(user_id)
    if investment_ids:
        query.append(f"AND id IN ({','.join('?' * len(investment_ids))})")
        params.extend(investment_ids)
    query.append("ORDER BY created_at ASC, id ASC")
    with _db_connection() as conn:
        rows = conn.execute("\n".join(query), params).fetchall()
    return [_investment_to_dict(row) for row in rows]


def _portfolio_tracker(investments: list[dict]) -> dict:
    groups: dict[str, dict] = {}
    for inv in investments:
        group = groups.setdefault(
            inv["asset"],
            {
                "asset": inv["asset"],
                "total_quantity": 0.0,
                "average_price": 0.0,
                "total_value": 0.0,
                "investments": [],
            },
        )
        value = _convert_to_eur(inv["quantity"] * inv["unit_price"], inv["currency"])
        group["total_quantity"] += inv["quantity"]
        group["total_value"] += value
        group["investments"].append({**inv, "value_eur": value})
    for group in groups.values():
        if group["total_quantity"] > 0:
            group["average_price"] = group["total_value"] / group["total_quantity"]
        group["total_value"] = round(group["total_value"], 2)
    items = sorted(groups.values(), key=lambda item: item["total_value"], reverse=True)
    return {
        "items": items,
        "currency": BASE_CURRENCY,
        "total_portfolio_value": round(sum(item["total_value"] for item in items), 2),
        "asset_count": len(items),
        "transaction_count": len(investments),
    }


def _resolve_yahoo_symbol(
    asset: str, description: str | None, override: str | None = None
) -> str | None:
    if override:
        return override.strip().upper()
    asset = (asset or "").strip().upper()
    if not asset:
        return None
    description = description or ""
    for table in (KNOWN_ETFS, KNOWN_CRYPTOS, KNOWN_BRAZILIAN_STOCKS):
        if asset in table:
            return table[asset]
    for hints, suffix in EXCHANGE_SUFFIX_HINTS:
        if any(hint in description for hint in hints):
            return f"{asset}{suffix}"
    if "acao brasileira" in _normalize_text(description) or (
        len(asset) == 5 and asset[-1] in "34"
    ):
        return f"{asset}.SA"
    if any(hint in description for hint in CRYPTO_HINTS):
        return f"{asset}-USD"
    if len(asset) <= 5 and "." not in asset:
        return asset
    return None


def _http_get_json(url: str) -> dict:
    request = urllib.request.Request(
        url, headers={"User-Agent": HTTP_USER_AGENT, "Accept": "application/json"}
    )
    with urllib.request.urlopen(request, timeout=PRICE_REQUEST_TIMEOUT) as response:
        return json.loads(response.read().decode("utf-8"))


def _fetch_yahoo_quote(symbol: str) -> dict:
    url = f"{YAHOO_CHART_URL}/{urllib.parse.quote(symbol)}?interval=1d"
    try:
        data = _http_get_json(url)
    except (OSError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Price unavailable for {symbol}.") from exc
    results = (data.get("chart") or {}).get("result") or []
    if not results:
        raise HTTPException(status_code=400, detail=f"Price data not found for {symbol}.")
    meta = results[0].get("meta") or {}
    price = meta.get("regularMarketPrice")
    if price is None:
        raise HTTPException(status_code=400, detail=f"Price unavailable for {symbol}.")
    price = float(price)
    currency = meta.get("currency")
    previous_close = meta.get("previousClose") or meta.get("chartPreviousClose")
    if currency in ("GBp", "GBX"):
        price = price / 100
        previous_close = previous_close / 100 if previous_close else previous_close
        currency = "GBP"
    change = None
    if previous_close:
        change = (price - float(previous_close)) / float(previous_close) * 100
    return {
        "symbol": symbol.upper(),
        "price": price,
        "currency": currency.upper() if currency else None,
        "change_percent": change,
    }


def _fetch_coingecko_prices(coin_ids: list[str]) -> dict[str, dict]:
    query = urllib.parse.urlencode(
        {
            "ids": ",".join(coin_ids),
            "vs_currencies": "usd,eur",
            "include_24h_change": "true",
        }
    )
    try:
        data = _http_get_json(f"{COINGECKO_URL}?{query}")
    except (OSError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Crypto prices unavailable.") from exc
    prices: dict[str, dict] = {}
    for coin_id in coin_ids:
        entry = data.get(coin_id)
        if not entry:
            continue
        prices[coin_id] = {
            "usd": entry.get("usd"),
            "eur": entry.get("eur"),
            "change_24h": entry.get("eur_24h_change", entry.get("usd_24h_change")),
        }
    return prices


def _pause_between_requests() -> None:
    if PRICE_REQUEST_DELAY_MS > 0:
        time.sleep(PRICE_REQUEST_DELAY_MS / 1000)


def _get_cached_quotes(symbols: list[str]) -> dict[str, dict]:
    if not symbols:
        return {}
    placeholders = ",".join("?" * len(symbols))
    with _db_connection() as conn:
        rows = conn.execute(
            f"""
            SELECT symbol, price, currency, change_percent, updated_at
            FROM asset_prices
            WHERE symbol IN ({placeholders})
            """,
            [symbol.upper() for symbol in symbols],
        ).fetchall()
    return {
        row["symbol"]: {
            "symbol": row["symbol"],
            "price": float(row["price"]),
            "currency": row["currency"],
            "change_percent": row["change_percent"],
            "updated_at": row["updated_at"],
        }
        for row in rows
    }


def _upsert_quote(quote: dict) -> None:
    now = datetime.utcnow().isoformat()
    with _db_connection() as conn:
        conn.execute(
            """
            INSERT INTO asset_prices (symbol, price, currency, change_percent, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(symbol)
            DO UPDATE SET price = excluded.price,
                          currency = excluded.currency,
                          change_percent = excluded.change_percent,
                          updated_at = excluded.updated_at
            """,
            (
                quote["symbol"].upper(),
                quote["price"],
                quote.get("currency"),
                quote.get("change_percent"),
                now,
            ),
        )
    quote["updated_at"] = now


def _quote_is_fresh(updated_at: str | None) -> bool:
    if not updated_at:
        return False
    timestamp = _to_datetime(updated_at)
    if timestamp == datetime.min:
        return False
    age = datetime.utcnow() - timestamp
    return age.total_seconds() < PRICE_CACHE_TTL_MINUTES * 60


def _get_quote(symbol: str, cache: dict[str, dict], force: bool = False) -> tuple[dict, str]:
    symbol = symbol.upper()
    cached = cache.get(symbol)
    if cached and not force and _quote_is_fresh(cached["updated_at"]):
        return cached, "cached"
    try:
        quote = _fetch_yahoo_quote(symbol)
    finally:
        _pause_between_requests()
    _upsert_quote(quote)
    cache[symbol] = quote
    return quote, "updated"


def _price_row(inv: dict, symbol: str | None) -> dict:
    return {
        "investment_id": inv["id"],
        "user_id": inv["user_id"],
        "asset": inv["asset"],
        "description": inv["description"],
        "quantity": inv["quantity"],
        "original_price": inv["unit_price"],
        "current_price": None,
        "original_total": inv["quantity"] * inv["unit_price"],
        "current_total": None,
        "currency": inv["currency"],
        "percent_change": None,
        "symbol": symbol,
        "status": "pending",
        "error": None,
        "updated_at": None,
    }


def _apply_quote(row: dict, quote: dict, status: str) -> None:
    price = quote["price"]
    quote_currency = quote.get("currency")
    if quote_currency in EXCHANGE_RATES and quote_currency != row["currency"]:
        price = _convert_currency(price, quote_currency, row["currency"], digits=6)
    row["current_price"] = price
    row["current_total"] = row["quantity"] * price
    if row["original_price"]:
        row["percent_change"] = (price - row["original_price"]) / row["original_price"] * 100
    row["status"] = status
    row["updated_at"] = quote.get("updated_at")


def _asset_price_totals(rows: list[dict]) -> dict:
    original = {currency: 0.0 for currency in PORTFOLIO_TOTAL_CURRENCIES}
    current = {currency: 0.0 for currency in PORTFOLIO_TOTAL_CURRENCIES}
    for row in rows:
        currency = row["currency"]
        original[currency] = original.get(currency, 0.0) + row["original_total"]
        value = row["current_total"] if row["current_total"] is not None else row["original_total"]
        current[currency] = current.get(currency, 0.0) + value
    return {
        "original_total": original,
        "current_total": current,
        "original_total_eur": round(
            sum(_convert_to_eur(value, currency) for currency, value in original.items()), 2
        ),
        "current_total_eur": round(
            sum(_convert_to_eur(value, currency) for currency, value in current.items()), 2
        ),
    }


def _asset_prices(investments: list[dict], force: bool = False, offline: bool = False) -> dict:
    symbols = {
        inv["id"]: _resolve_yahoo_symbol(inv["asset"], inv["description"], inv["yahoo_symbol"])
        for inv in investments
    }
    cache = _get_cached_quotes([symbol for symbol in symbols.values() if symbol])
    failures: dict[str, str] = {}
    refreshed: set[str] = set()
    rows: list[dict] = []
    for inv in investments:
        symbol = symbols[inv["id"]]
        row = _price_row(inv, symbol)
        rows.append(row)
        if not symbol:
            row["current_price"] = inv["unit_price"]
            row["current_total"] = row["original_total"]
            row["percent_change"] = 0.0
            row["status"] = "unresolved"
            continue
        if symbol in failures:
            row["status"] = "error"
            row["error"] = failures[symbol]
            continue
        if offline:
            cached = cache.get(symbol)
            if cached:
                _apply_quote(row, cached, "cached")
            continue
        try:
            quote, status = _get_quote(symbol, cache, force=force and symbol not in refreshed)
        except HTTPException as exc:
            logger.warning("Price refresh failed for %s: %s", symbol, exc.detail)
            failures[symbol] = f"Price refresh failed: {exc.detail}"
            row["status"] = "error"
            row["error"] = failures[symbol]
            continue
        refreshed.add(symbol)
        _apply_quote(row, quote, status)
    return {
        "items": rows,
        "totals": _asset_price_totals(rows),
        "last_update": datetime.utcnow().isoformat(),
    }


def _market_prices() -> dict:
    result: dict = {"crypto": [], "stocks": [], "error": None}
    try:
        crypto = _fetch_coingecko_prices([asset["id"] for asset in MARKET_CRYPTOS])
    except HTTPException as exc:
        logger.warning("Crypto watchlist refresh failed: %s", exc.detail)
        result["error"] = "Crypto prices unavailable. Try again later."
    else:
        result["crypto"] = [
            {
                "id": asset["id"],
                "name": asset["name"],
                "symbol": asset["symbol"],
                "price": float((crypto.get(asset["id"]) or {}).get("eur") or 0.0),
                "change_24h": (crypto.get(asset["id"]) or {}).get("change_24h") or 0.0,
            }
            for asset in MARKET_CRYPTOS
        ]
    cache = _get_cached_quotes([asset["id"] for asset in MARKET_STOCKS])
    for asset in MARKET_STOCKS:
        item = {
            "id": asset["id"],
            "name": asset["name"],
            "symbol": asset["symbol"],
            "price": 0.0,
            "change_24h": 0.0,
            "currency": None,
        }
        try:
            quote, _ = _get_quote(asset["id"], cache)
        except HTTPException as exc:
            logger.warning("Watchlist price failed for %s: %s", asset["id"], exc.detail)
        else:
            item["price"] = quote["price"]
            item["change_24h"] = quote.get("change_percent") or 0.0
            item["currency"] = quote.get("currency")
        result["stocks"].append(item)
    return result


def _fund_entry_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "fund_type": row["fund_type"],
        "type": row["entry_type"],
        "amount": float(row["amount"]),
        "currency": row["currency"],
        "name": row["name"],
        "description": row["description"],
        "category": row["category"],
        "source": row["source"],
        "created_at": row["created_at"],
    }


def _signed_entry_amount(entry_type: str, amount: float) -> float:
    if not amount:
        raise HTTPException(status_code=400, detail="Amount must be different from 0.")
    if entry_type == "expense":
        return -abs(amount)
    return abs(amount)


def _insert_fund_entry(
    conn: sqlite3.Connection,
    user_id: int,
    fund_type: str,
    entry_type: str,
    amount: float,
    currency: str,
    name: str | None,
    description: str | None,
    category: str | None,
    created_at: str,
    source: str = "manual",
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO fund_entries (
            user_id, fund_type, entry_type, amount, currency, name, description,
            category, source, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            fund_type,
            entry_type,
            _signed_entry_amount(entry_type, amount),
            currency,
            name,
            description,
            category,
            source,
            created_at,
        ),
    )
    return cursor.lastrowid


def _get_fund_entry(entry_id: int) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute("SELECT * FROM fund_entries WHERE id = ?", (entry_id,)).fetchone()


def _create_fund_entry(user_id: int, fund_type: str, payload: FundEntryRequest) -> dict:
    entry_type = (payload.type or "").strip().lower()
    if entry_type not in FUND_ENTRY_TYPES:
        raise HTTPException(status_code=400, detail="Entry type must be income or expense.")
    currency = _normalize_currency(payload.currency)
    created_at = _entry_timestamp(payload.date)
    with _db_connection() as conn:
        entry_id = _insert_fund_entry(
            conn,
            user_id,
            fund_type,
            entry_type,
            payload.amount,
            currency,
            _normalize_optional_text(payload.name),
            _normalize_optional_text(payload.description),
            _normalize_optional_text(payload.category) or fund_type,
            created_at,
        )
    return _fund_entry_to_dict(_get_fund_entry(entry_id))


def _list_fund_entries(fund_type: str, user_id: int | None) -> list[dict]:
    query = ["SELECT * FROM fund_entries", "WHERE fund_type = ?"]
    params: list[object] = [fund_type]
    if user_id is not None:
        query.append("AND user_id = ?")
        params.append(user_id)
    query.append("ORDER BY created_at DESC, id DESC")
    with _db_connection() as conn:
        rows = conn.execute("\n".join(query), params).fetchall()
    return [_fund_entry_to_dict(row) for row in rows]


def _delete_fund_entry(entry_id: int) -> bool:
    with _db_connection() as conn:
        run = conn.execute(
            """
            SELECT travel_fund_id, travel_amount
            FROM contribution_runs
            WHERE entry_id = ?
            """,
            (entry_id,),
        ).fetchone()
        if run and run["travel_fund_id"] is not None and run["travel_amount"]:
            conn.execute(
                """
                UPDATE travel_funds
                SET current_amount = current_amount - ?, updated_at = ?
                WHERE id = ?
                """,
                (run["travel_amount"], datetime.utcnow().isoformat(), run["travel_fund_id"]),
            )
        conn.execute("DELETE FROM contribution_runs WHERE entry_id = ?", (entry_id,))
        cursor = conn.execute("DELETE FROM fund_entries WHERE id = ?", (entry_id,))
    return cursor.rowcount > 0


def _fund_summary(fund_type: str, user_id: int | None) -> dict:
    entries = _list_fund_entries(fund_type, user_id)
    amounts = [_convert_to_eur(entry["amount"], entry["currency"]) for entry in entries]
    income = sum(value for value in amounts if value > 0)
    expenses = sum(value for value in amounts if value < 0)
    return {
        "fund_type": fund_type,
        "currency": BASE_CURRENCY,
        "balance": round(sum(amounts), 2),
        "income": round(income, 2),
        "expenses": round(abs(expenses), 2),
        "entries": len(entries),
    }


def _participants_for(conn: sqlite3.Connection, fund_id: int) -> list[dict]:
    rows = conn.execute(
        """
        SELECT user_id, contribution
        FROM travel_fund_participants
        WHERE fund_id = ?
        ORDER BY id ASC
        """,
        (fund_id,),
    ).fetchall()
    return [
        {"user_id": row["user_id"], "contribution": float(row["contribution"])}
        for row in rows
    ]


def _travel_fund_to_dict(conn: sqlite3.Connection, row: sqlite3.Row) -> dict:
    target = float(row["target_amount"]) if row["target_amount"] is not None else None
    current_amount = float(row["current_amount"] or 0)
    progress = None
    if target:
        progress = round(current_amount / target * 100, 2)
    return {
        "id": row["id"],
        "user_id": row["owner_id"],
        "name": row["name"],
        "description": row["description"],
        "target_amount": target,
        "deadline": row["deadline"],
        "currency": row["currency"],
        "participants": _participants_for(conn, row["id"]),
        "total": float(row["total"] or 0),
        "current_amount": current_amount,
        "progress": progress,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _validate_participants(participants: list[TravelFundParticipant]) -> None:
    seen: set[int] = set()
    for participant in participants:
        if participant.contribution < 0:
            raise HTTPException(status_code=400, detail="Contribution cannot be negative.")
        if participant.user_id in seen:
            raise HTTPException(status_code=400, detail="Duplicate participant.")
        if not _get_user(participant.user_id):
            raise HTTPException(status_code=404, detail="User not found.")
        seen.add(participant.user_id)


def _replace_participants(
    conn: sqlite3.Connection, fund_id: int, participants: list[TravelFundParticipant]
) -> None:
    conn.execute("DELETE FROM travel_fund_participants WHERE fund_id = ?", (fund_id,))
    for participant in participants:
        conn.execute(
            """
            INSERT INTO travel_fund_participants (fund_id, user_id, contribution)
            VALUES (?, ?, ?)
            """,
            (fund_id, participant.user_id, participant.contribution),
        )


def _get_travel_fund(fund_id: int) -> dict | None:
    with _db_connection() as conn:
        row = conn.execute("SELECT * FROM travel_funds WHERE id = ?", (fund_id,)).fetchone()
        if not row:
            return None
        return _travel_fund_to_dict(conn, row)


def _create_travel_fund(owner_id: int, payload: TravelFundCreateRequest) -> dict:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Travel fund name is required.")
    if payload.target_amount is not None and payload.target_amount < 0:
        raise HTTPException(status_code=400, detail="Target amount cannot be negative.")
    participants = payload.participants or []
    _validate_participants(participants)
    currency = _normalize_currency(payload.currency)
    total = payload.total
    if total is None:
        total = sum(participant.contribution for participant in participants)
    current_amount = payload.current_amount if payload.current_amount is not None else total
    deadline = _parse_transaction_date(payload.deadline) if payload.deadline else None
    now = datetime.utcnow().isoformat()
    with _db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO travel_funds (
                owner_id, name, description, target_amount, deadline, currency,
                total, current_amount, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                owner_id,
                name,
                _normalize_optional_text(payload.description),
                payload.target_amount,
                deadline,
                currency,
                total,
                current_amount,
                now,
                now,
            ),
        )
        fund_id = cursor.lastrowid
        _replace_participants(conn, fund_id, participants)
    return _get_travel_fund(fund_id)


def _update_travel_fund(fund_id: int, payload: TravelFundUpdateRequest) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    with _db_connection() as conn:
        current = conn.execute("SELECT * FROM travel_funds WHERE id = ?", (fund_id,)).fetchone()
    name = current["name"]
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Travel fund name is required.")
    participants = payload.participants
    if participants is not None:
        _validate_participants(participants)
    total = current["total"]
    if changes.get("total") is not None:
        total = changes["total"]
    elif participants is not None:
        total = sum(participant.contribution for participant in participants)
    current_amount = (
        changes["current_amount"]
        if changes.get("current_amount") is not None
        else current["current_amount"]
    )
    target_amount = (
        changes["target_amount"] if "target_amount" in changes else current["target_amount"]
    )
    if target_amount is not None and target_amount < 0:
        raise HTTPException(status_code=400, detail="Target amount cannot be negative.")
    deadline = current["deadline"]
    if "deadline" in changes:
        deadline = _parse_transaction_date(changes["deadline"]) if changes["deadline"] else None
    currency = (
        _normalize_currency(changes["currency"]) if changes.get("currency") else current["currency"]
    )
    description = (
        _normalize_optional_text(changes["description"])
        if "description" in changes
        else current["description"]
    )
    with _db_connection() as conn:
        conn.execute(
            """
            UPDATE travel_funds
            SET name = ?, description = ?, target_amount = ?, deadline = ?, currency = ?,
                total = ?, current_amount = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                name,
                description,
                target_amount,
                deadline,
                currency,
                total,
                current_amount,
                datetime.utcnow().isoformat(),
                fund_id,
            ),
        )
        if participants is not None:
            _replace_participants(conn, fund_id, participants)
    return _get_travel_fund(fund_id)


def _delete_travel_fund(fund_id: int) -> bool:
    with _db_connection() as conn:
        conn.execute("DELETE FROM travel_fund_participants WHERE fund_id = ?", (fund_id,))
        cursor = conn.execute("DELETE FROM travel_funds WHERE id = ?", (fund_id,))
    return cursor.rowcount > 0


def _can_see_travel_fund(user: sqlite3.Row, fund: dict) -> bool:
    if _can_access(user, fund["user_id"]):
        return True
    return any(participant["user_id"] == user["id"] for participant in fund["participants"])


def _list_travel_funds(user: sqlite3.Row) -> list[dict]:
    with _db_connection() as conn:
        rows = conn.execute("SELECT * FROM travel_funds ORDER BY created_at ASC, id ASC").fetchall()
        funds = [_travel_fund_to_dict(conn, row) for row in rows]
    return [fund for fund in funds if _can_see_travel_fund(user, fund)]


def _contribution_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "fund_type": row["fund_type"],
        "fund_id": row["fund_id"],
        "amount": float(row["amount"]),
        "day_of_month": row["day_of_month"],
        "is_active": bool(row["is_active"]),
        "currency": row["currency"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _validate_contribution(amount: float, day_of_month: int) -> None:
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be greater than 0.")
    if day_of_month < 1 or day_of_month > 31:
        raise HTTPException(status_code=400, detail="Day of month must be between 1 and 31.")


def _contribution_fund_type(value: str | None) -> str:
    fund_type = (value or "").strip().lower()
    if fund_type not in FUND_TYPES:
        raise HTTPException(status_code=400, detail="Unknown fund type.")
    return fund_type


def _get_contribution(contribution_id: int) -> sqlite3.Row | None:
    with _db_connection() as conn:
        return conn.execute(
            "SELECT * FROM monthly_contributions WHERE id = ?", (contribution_id,)
        ).fetchone()


def _create_contribution(user_id: int, payload: MonthlyContributionCreateRequest) -> dict:
    fund_type = _contribution_fund_type(payload.fund_type)
    _validate_contribution(payload.amount, payload.day_of_month)
    currency = _normalize_currency(payload.currency)
    now = datetime.utcnow().isoformat()
    with _db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO monthly_contributions (
                user_id, fund_type, fund_id, amount, day_of_month, is_active,
                currency, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                fund_type,
                _normalize_optional_text(payload.fund_id),
                payload.amount,
                payload.day_of_month,
                1 if payload.is_active else 0,
                currency,
                now,
                now,
            ),
        )
        contribution_id = cursor.lastrowid
    return _contribution_to_dict(_get_contribution(contribution_id))


def _update_contribution(
    contribution_id: int, payload: MonthlyContributionUpdateRequest
) -> dict:
    current = _get_contribution(contribution_id)
    changes = payload.model_dump(exclude_unset=True)
    fund_type = (
        _contribution_fund_type(changes["fund_type"])
        if changes.get("fund_type")
        else current["fund_type"]
    )
    amount = changes["amount"] if changes.get("amount") is not None else current["amount"]
    day_of_month = (
        changes["day_of_month"]
        if changes.get("day_of_month") is not None
        else current["day_of_month"]
    )
    _validate_contribution(amount, day_of_month)
    is_active = (
        changes["is_active"] if changes.get("is_active") is not None else bool(current["is_active"])
    )
    fund_id = (
        _normalize_optional_text(changes["fund_id"]) if "fund_id" in changes else current["fund_id"]
    )
    currency = (
        _normalize_currency(changes["currency"]) if changes.get("currency") else current["currency"]
    )
    with _db_connection() as conn:
        conn.execute(
            """
            UPDATE monthly_contributions
            SET fund_type = ?, fund_id = ?, amount = ?, day_of_month = ?, is_active = ?,
                currency = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                fund_type,
                fund_id,
                amount,
                day_of_month,
                1 if is_active else 0,
                currency,
                datetime.utcnow().isoformat(),
                contribution_id,
            ),
        )
    return _contribution_to_dict(_get_contribution(contribution_id))


def _delete_contribution(contribution_id: int) -> bool:
    with _db_connection() as conn:
        conn.execute(
            "DELETE FROM contribution_runs WHERE contribution_id = ?", (contribution_id,)
        )
        cursor = conn.execute(
            "DELETE FROM monthly_contributions WHERE id = ?", (contribution_id,)
        )
    return cursor.rowcount > 0


def _list_contributions(
    user_id: int | None,
    fund_id: str | None = None,
    fund_type: str | None = None,
    active_only: bool = False,
) -> list[dict]:
    query = ["SELECT * FROM monthly_contributions", "WHERE 1 = 1"]
    params: list[object] = []
    if user_id is not None:
        query.append("AND user_id = ?")
        params.append(user_id)
    if fund_id:
        query.append("AND fund_id = ?")
        params.append(fund_id.strip())
    if fund_type:
        query.append("AND fund_type = ?")
        params.append(_contribution_fund_type(fund_type))
    if active_only:
        query.append("AND is_active = 1")
    query.append("ORDER BY day_of_month ASC, id ASC")
    with _db_connection() as conn:
        rows = conn.execute("\n".join(query), params).fetchall()
    return [_contribution_to_dict(row) for row in rows]


def _apply_monthly_contributions(
    user_id: int | None, month: str | None = None, today: date | None = None
) -> dict:
    today = today or _utc_today()
    year, month_number = _parse_month(month, today)
    if (year, month_number) > (today.year, today.month):
        raise HTTPException(status_code=400, detail="Cannot apply contributions for a future month.")
    month_key = f"{year:04d}-{month_number:02d}"
    days_in_month = calendar.monthrange(year, month_number)[1]
    is_current = (year, month_number) == (today.year, today.month)
    applied: list[dict] = []
    skipped: list[dict] = []
    for contribution in _list_contributions(user_id, active_only=True):
        due_day = min(contribution["day_of_month"], days_in_month)
        if is_current and due_day > today.day:
            skipped.append({"id": contribution["id"], "reason": "not_due"})
            continue
        now = datetime.utcnow().isoformat()
        with _db_connection() as conn:
            already = conn.execute(
                """
                SELECT id FROM contribution_runs
                WHERE contribution_id = ? AND month = ?
                """,
                (contribution["id"], month_key),
            ).fetchone()
            if already:
                skipped.append({"id": contribution["id"], "reason": "already_applied"})
                continue
            entry_id = _insert_fund_entry(
                conn,
                contribution["user_id"],
                contribution["fund_type"],
                "income",
                contribution["amount"],
                contribution["currency"],
                CONTRIBUTION_ENTRY_NAME,
                f"Contribuição mensal #{contribution['id']}",
                contribution["fund_type"],
                datetime(year, month_number, due_day).isoformat(),
                source="monthly_contribution",
            )
            travel_fund = None
            fund_id = contribution["fund_id"]
            if contribution["fund_type"] == "travel" and fund_id and fund_id.isdigit():
                travel_fund = conn.execute(
                    "SELECT id, currency FROM travel_funds WHERE id = ?", (int(fund_id),)
                ).fetchone()
            travel_amount = None
            if travel_fund:
                travel_amount = _convert_currency(
                    contribution["amount"], contribution["currency"], travel_fund["currency"]
                )
                conn.execute(
                    """
                    UPDATE travel_funds
                    SET current_amount = current_amount + ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (travel_amount, now, travel_fund["id"]),
                )
            conn.execute(
                """
                INSERT INTO contribution_runs (
                    contribution_id, month, entry_id, travel_fund_id, travel_amount, applied_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    contribution["id"],
                    month_key,
                    entry_id,
                    travel_fund["id"] if travel_fund else None,
                    travel_amount,
                    now,
                ),
            )
        applied.append(
            {
                "id": contribution["id"],
                "entry_id": entry_id,
                "fund_type": contribution["fund_type"],
                "amount": contribution["amount"],
            }
        )
    if applied:
        logger.info("Applied %s monthly contribution(s) for %s", len(applied), month_key)
    return {"month": month_key, "applied": applied, "skipped": skipped}


def _investments_total_eur(investments: list[dict]) -> float:
    return round(
        sum(_convert_to_eur(inv["quantity"] * inv["unit_price"], inv["currency"]) for inv in investments),
        2,
    )


def _dashboard_summary(user: sqlite3.Row, month: str | None, today: date | None = None) -> dict:
    user_id = _scope_user_id(user, None)
    year, month_number = _parse_month(month, today)
    month_key = f"{year:04d}-{month_number:02d}"
    expenses = _list_expenses(user_id, month=month_key)
    salaries = _list_salaries(user_id, year=year, month=month_number)
    by_category: dict[str, float] = {}
    total_expenses = 0.0
    for expense in expenses:
        value = abs(_convert_to_eur(expense["amount"], expense["currency"]))
        total_expenses += value
        by_category[expense["category"]] = by_category.get(expense["category"], 0.0) + value
    total_salaries = sum(_convert_to_eur(item["amount"], item["currency"]) for item in salaries)
    funds = [_fund_summary(fund_type, user_id) for fund_type in FUND_TYPES]
    contributions = _list_contributions(user_id, active_only=True)
    return {
        "month": month_key,
        "currency": BASE_CURRENCY,
        "scope": "all" if user_id is None else "user",
        "total_expenses": round(total_expenses, 2),
        "total_salaries": round(total_salaries, 2),
        "balance": round(total_salaries - total_expenses, 2),
        "total_investments": _investments_total_eur(_list_investments(user_id)),
        "total_funds": round(sum(fund["balance"] for fund in funds), 2),
        "funds": funds,
        "travel_funds": _list_travel_funds(user),
        "expenses_by_category": [
            {"category": category, "total": round(total, 2)}
            for category, total in sorted(by_category.items(), key=lambda item: item[1], reverse=True)
        ],
        "active_contributions": {
            "count": len(contributions),
            "monthly_total": round(
                sum(_convert_to_eur(item["amount"], item["currency"]) for item in contributions), 2
            ),
        },
    }


def _annual_report(user_id: int | None, year: int) -> dict:
    months = [{"month": month, "expenses": 0.0, "count": 0} for month in range(1, 13)]
    expenses = _list_expenses(user_id, year=year)
    salaries = _list_salaries(user_id, year=year)
    per_user: dict[int, dict] = {}
    if user_id is None:
        users = _list_users()
    else:
        users = [_user_to_dict(_get_user(user_id))]
    for item in users:
        per_user[item["id"]] = {
            "user_id": item["id"],
            "name": item["name"],
            "total_salary": 0.0,
            "total_expenses": 0.0,
            "balance": 0.0,
        }
    for expense in expenses:
        value = abs(_convert_to_eur(expense["amount"], expense["currency"]))
        month_key = _month_key(expense["created_at"])
        if month_key:
            row = months[int(month_key[5:7]) - 1]
            row["expenses"] += value
            row["count"] += 1
        if expense["user_id"] in per_user:
            per_user[expense["user_id"]]["total_expenses"] += value
    for salary in salaries:
        value = _convert_to_eur(salary["amount"], salary["currency"])
        if salary["user_id"] in per_user:
            per_user[salary["user_id"]]["total_salary"] += value
    for row in months:
        row["expenses"] = round(row["expenses"], 2)
    summaries = []
    for summary in per_user.values():
        summary["total_salary"] = round(summary["total_salary"], 2)
        summary["total_expenses"] = round(summary["total_expenses"], 2)
        summary["balance"] = round(summary["total_salary"] - summary["total_expenses"], 2)
        summaries.append(summary)
    total_salaries = round(
        sum(_convert_to_eur(item["amount"], item["currency"]) for item in salaries), 2
    )
    total_expenses = round(
        sum(abs(_convert_to_eur(item["amount"], item["currency"])) for item in expenses), 2
    )
    return {
        "year": year,
        "currency": BASE_CURRENCY,
        "months": months,
        "total_salaries": total_salaries,
        "total_expenses": total_expenses,
        "balance": round(total_salaries - total_expenses, 2),
        "users": summaries,
    }


def _build_annual_workbook(report: dict) -> bytes:
    workbook = Workbook()
    summary_sheet = workbook.active
    summary_sheet.title = "Resumo"
    summary_sheet.append(["Usuário", "Salário", "Despesas", "Saldo"])
    for row in report["users"]:
        summary_sheet.append(
            [row["name"], row["total_salary"], row["total_expenses"], row["balance"]]
        )
    summary_sheet.append(
        ["Total", report["total_salaries"], report["total_expenses"], report["balance"]]
    )
    monthly_sheet = workbook.create_sheet("Mensal")
    monthly_sheet.append(["Mês", "Despesas", "Lançamentos"])
    for row in report["months"]:
        monthly_sheet.append(
            [MONTH_ABBREVIATIONS_PT[row["month"] - 1], row["expenses"], row["count"]]
        )
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


_init_db()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/currencies")
def list_currencies() -> dict:
    return {
        "base": BASE_CURRENCY,
        "items": [
            {"code": code, "symbol": _currency_symbol(code), "rate": rate}
            for code, rate in EXCHANGE_RATES.items()
        ],
    }


@app.post("/users")
def create_user(
    payload: UserCreateRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    if _normalize_role(payload.role) == "admin" and not _can_grant_admin(x_user_id):
        payload = payload.model_copy(update={"role": "user"})
    return {"status": "saved", "user": _create_user(payload)}


@app.get("/users")
def list_users() -> dict:
    return {"items": _list_users()}


@app.get("/users/lookup")
def lookup_user(name: str) -> dict:
    user = _find_user_by_name(name)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"user": _user_to_dict(user)}


@app.get("/users/{user_id}")
def get_user(user_id: int) -> dict:
    user = _get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"user": _user_to_dict(user)}


@app.put("/users/{user_id}")
def update_user(
    user_id: int,
    payload: UserUpdateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    if not _can_access(acting, user_id):
        raise HTTPException(status_code=403, detail="Not allowed to edit another user.")
    if payload.role and payload.role.strip().lower() != acting["role"] and not _is_admin(acting):
        raise HTTPException(status_code=403, detail="Only admins can change roles.")
    user = _update_user(user_id, payload)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"status": "saved", "user": user}


@app.delete("/users/{user_id}")
def delete_user(user_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    if not _can_access(acting, user_id):
        raise HTTPException(status_code=403, detail="Not allowed to delete another user.")
    if not _delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return {"status": "deleted"}


@app.put("/users/{user_id}/salary")
def set_user_salary(
    user_id: int,
    payload: UserSalaryRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    if not _can_access(acting, user_id):
        raise HTTPException(status_code=403, detail="Not allowed to edit another user.")
    user = _set_user_salary(user_id, payload.salary, payload.currency)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"status": "saved", "user": user}


@app.delete("/users/{user_id}/salary")
def clear_user_salary(user_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    if not _can_access(acting, user_id):
        raise HTTPException(status_code=403, detail="Not allowed to edit another user.")
    user = _set_user_salary(user_id, None, None)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"status": "saved", "user": user}


@app.post("/salaries")
def create_salary(
    payload: SalaryCreateRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    owner_id = _owner_for_write(acting, payload.user_id)
    return {"status": "saved", "salary": _create_salary(owner_id, payload)}


@app.get("/salaries")
def list_salaries(
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
    year: int | None = None,
    month: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    scope = _scope_user_id(acting, user_id)
    return {"items": _list_salaries(scope, year=year, month=month)}


@app.get("/salaries/annual/{year}")
def annual_salaries(
    year: int,
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    return _annual_salaries(_scope_user_id(acting, user_id), year)


@app.put("/salaries/{salary_id}")
def update_salary(
    salary_id: int,
    payload: SalaryUpdateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    salary = _get_salary(salary_id)
    if not salary or not _can_access(acting, salary["user_id"]):
        raise HTTPException(status_code=404, detail="Salary not found.")
    return {"status": "saved", "salary": _update_salary(salary_id, payload)}


@app.delete("/salaries/{salary_id}")
def delete_salary(salary_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    salary = _get_salary(salary_id)
    if not salary or not _can_access(acting, salary["user_id"]):
        raise HTTPException(status_code=404, detail="Salary not found.")
    _delete_salary(salary_id)
    return {"status": "deleted"}


@app.get("/expenses/categories")
def list_expense_categories() -> dict:
    return {
        "items": [{"value": value, "label": label} for value, label in EXPENSE_CATEGORIES],
        "default": EXPENSE_DEFAULT_CATEGORY,
    }


@app.get("/expenses/history")
def expense_history(
    x_user_id: str | None = Header(default=None), user_id: int | None = None
) -> dict:
    acting = _require_user(x_user_id)
    return _expense_history(_scope_user_id(acting, user_id))


@app.post("/expenses/import/preview")
def expense_import_preview(
    x_user_id: str | None = Header(default=None),
    currency: str | None = Form(default=None),
    text: str | None = Form(default=None),
    file: UploadFile | None = File(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    file_bytes = file.file.read() if file else None
    if not file_bytes and not text:
        raise HTTPException(status_code=400, detail="Provide a file or pasted data.")
    currency_fallback = _normalize_currency(currency, acting["currency"])
    filename = file.filename if file_bytes else "pasted.csv"
    content_hash = hashlib.sha256(file_bytes if file_bytes else text.encode("utf-8")).hexdigest()
    rows = _load_import_rows(file_bytes, filename, text)
    if not rows:
        raise HTTPException(status_code=400, detail="No rows found in the file.")
    columns, preview_rows, mapping, warnings = _build_import_preview(rows, currency_fallback)
    return {
        "source_file": filename,
        "file_hash": content_hash,
        "currency": currency_fallback,
        "columns": columns,
        "rows": preview_rows,
        "mapping": mapping,
        "warnings": warnings,
    }


@app.post("/expenses/import/commit")
def expense_import_commit(
    payload: ExpenseImportCommitRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    owner_id = _owner_for_write(acting, payload.user_id)
    currency_fallback = _normalize_currency(payload.currency, acting["currency"])
    rows = [row.cells for row in payload.rows if row.include]
    items, warnings = _build_import_items(rows, payload.columns, payload.mapping, currency_fallback)
    outflows = [item for item in items if item["amount"] < 0]
    skipped_inflows = len(items) - len(outflows)
    for warning in warnings:
        logger.warning("Expense import %s: %s", payload.source_file, warning)
    if not outflows:
        raise HTTPException(status_code=400, detail="No valid rows to import.")
    try:
        meta = _save_expense_import(owner_id, payload.source_file, payload.file_hash, outflows)
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail="File already imported.") from exc
    logger.info("Imported %s expense(s) from %s", meta["items"], payload.source_file)
    return {
        "status": "imported",
        "import_id": meta["import_id"],
        "imported_at": meta["imported_at"],
        "items": meta["items"],
        "skipped_inflows": skipped_inflows,
        "warnings": warnings,
    }


@app.post("/expenses")
def create_expense(
    payload: ExpenseCreateRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    owner_id = _owner_for_write(acting, payload.user_id)
    return {"status": "saved", "expense": _create_expense(owner_id, payload)}


@app.get("/expenses")
def list_expenses(
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
    month: str | None = None,
    category: str | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    if month:
        year, month_number = _parse_month(month)
        month = f"{year:04d}-{month_number:02d}"
    return {"items": _list_expenses(_scope_user_id(acting, user_id), month=month, category=category)}


@app.get("/expenses/{expense_id}")
def get_expense(expense_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    expense = _get_expense(expense_id)
    if not expense or not _can_access(acting, expense["user_id"]):
        raise HTTPException(status_code=404, detail="Expense not found.")
    return {"expense": _expense_to_dict(expense)}


@app.put("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseUpdateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    expense = _get_expense(expense_id)
    if not expense or not _can_access(acting, expense["user_id"]):
        raise HTTPException(status_code=404, detail="Expense not found.")
    return {"status": "saved", "expense": _update_expense(expense_id, payload)}


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    expense = _get_expense(expense_id)
    if not expense or not _can_access(acting, expense["user_id"]):
        raise HTTPException(status_code=404, detail="Expense not found.")
    _delete_expense(expense_id)
    return {"status": "deleted"}


@app.get("/investments/portfolio")
def investment_portfolio(
    x_user_id: str | None = Header(default=None), user_id: int | None = None
) -> dict:
    acting = _require_user(x_user_id)
    return _portfolio_tracker(_list_investments(_scope_user_id(acting, user_id)))


@app.get("/investments/prices")
def investment_prices(
    x_user_id: str | None = Header(default=None), user_id: int | None = None
) -> dict:
    acting = _require_user(x_user_id)
    investments = _list_investments(_scope_user_id(acting, user_id))
    return _asset_prices(investments, offline=True)


@app.post("/investments/prices/refresh")
def refresh_investment_prices(
    payload: PriceRefreshRequest,
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    investments = _list_investments(_scope_user_id(acting, user_id), payload.investment_ids)
    return _asset_prices(investments, force=payload.force)


@app.post("/investments")
def create_investment(
    payload: InvestmentCreateRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    owner_id = _owner_for_write(acting, payload.user_id)
    return {"status": "saved", "investment": _create_investment(owner_id, payload)}


@app.get("/investments")
def list_investments(
    x_user_id: str | None = Header(default=None), user_id: int | None = None
) -> dict:
    acting = _require_user(x_user_id)
    return {"items": _list_investments(_scope_user_id(acting, user_id))}


@app.get("/investments/{investment_id}")
def get_investment(investment_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    investment = _get_investment(investment_id)
    if not investment or not _can_access(acting, investment["user_id"]):
        raise HTTPException(status_code=404, detail="Investment not found.")
    return {"investment": _investment_to_dict(investment)}


@app.put("/investments/{investment_id}")
def update_investment(
    investment_id: int,
    payload: InvestmentUpdateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    investment = _get_investment(investment_id)
    if not investment or not _can_access(acting, investment["user_id"]):
        raise HTTPException(status_code=404, detail="Investment not found.")
    return {"status": "saved", "investment": _update_investment(investment_id, payload)}


@app.delete("/investments/{investment_id}")
def delete_investment(investment_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    investment = _get_investment(investment_id)
    if not investment or not _can_access(acting, investment["user_id"]):
        raise HTTPException(status_code=404, detail="Investment not found.")
    _delete_investment(investment_id)
    return {"status": "deleted"}


@app.get("/prices/market")
def market_prices() -> dict:
    return _market_prices()


@app.get("/funds")
def list_funds(
    x_user_id: str | None = Header(default=None), user_id: int | None = None
) -> dict:
    acting = _require_user(x_user_id)
    scope = _scope_user_id(acting, user_id)
    return {"items": [_fund_summary(fund_type, scope) for fund_type in FUND_TYPES]}


@app.post("/funds/{fund_type}/entries")
def create_fund_entry(
    fund_type: str,
    payload: FundEntryRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    fund_type = _normalize_fund_type(fund_type)
    owner_id = _owner_for_write(acting, payload.user_id)
    return {"status": "saved", "entry": _create_fund_entry(owner_id, fund_type, payload)}


@app.get("/funds/{fund_type}/entries")
def list_fund_entries(
    fund_type: str,
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    fund_type = _normalize_fund_type(fund_type)
    return {"items": _list_fund_entries(fund_type, _scope_user_id(acting, user_id))}


@app.get("/funds/{fund_type}/summary")
def fund_summary(
    fund_type: str,
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    fund_type = _normalize_fund_type(fund_type)
    return _fund_summary(fund_type, _scope_user_id(acting, user_id))


@app.delete("/funds/{fund_type}/entries/{entry_id}")
def delete_fund_entry(
    fund_type: str, entry_id: int, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    fund_type = _normalize_fund_type(fund_type)
    entry = _get_fund_entry(entry_id)
    if not entry or entry["fund_type"] != fund_type or not _can_access(acting, entry["user_id"]):
        raise HTTPException(status_code=404, detail="Entry not found.")
    _delete_fund_entry(entry_id)
    return {"status": "deleted"}


@app.post("/travel-funds")
def create_travel_fund(
    payload: TravelFundCreateRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    owner_id = _owner_for_write(acting, payload.user_id)
    return {"status": "saved", "travel_fund": _create_travel_fund(owner_id, payload)}


@app.get("/travel-funds")
def list_travel_funds(x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    return {"items": _list_travel_funds(acting)}


@app.get("/travel-funds/{fund_id}")
def get_travel_fund(fund_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    fund = _get_travel_fund(fund_id)
    if not fund or not _can_see_travel_fund(acting, fund):
        raise HTTPException(status_code=404, detail="Travel fund not found.")
    return {"travel_fund": fund}


@app.put("/travel-funds/{fund_id}")
def update_travel_fund(
    fund_id: int,
    payload: TravelFundUpdateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    fund = _get_travel_fund(fund_id)
    if not fund or not _can_see_travel_fund(acting, fund):
        raise HTTPException(status_code=404, detail="Travel fund not found.")
    if not _can_access(acting, fund["user_id"]):
        raise HTTPException(status_code=403, detail="Only the owner can edit this travel fund.")
    return {"status": "saved", "travel_fund": _update_travel_fund(fund_id, payload)}


@app.delete("/travel-funds/{fund_id}")
def delete_travel_fund(fund_id: int, x_user_id: str | None = Header(default=None)) -> dict:
    acting = _require_user(x_user_id)
    fund = _get_travel_fund(fund_id)
    if not fund or not _can_access(acting, fund["user_id"]):
        raise HTTPException(status_code=404, detail="Travel fund not found.")
    _delete_travel_fund(fund_id)
    return {"status": "deleted"}


@app.post("/monthly-contributions/apply")
def apply_monthly_contributions(
    x_user_id: str | None = Header(default=None),
    month: str | None = None,
    user_id: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    return _apply_monthly_contributions(_scope_user_id(acting, user_id), month)


@app.get("/monthly-contributions/active")
def list_active_contributions(
    x_user_id: str | None = Header(default=None), user_id: int | None = None
) -> dict:
    acting = _require_user(x_user_id)
    return {"items": _list_contributions(_scope_user_id(acting, user_id), active_only=True)}


@app.post("/monthly-contributions")
def create_contribution(
    payload: MonthlyContributionCreateRequest, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    owner_id = _owner_for_write(acting, payload.user_id)
    return {"status": "saved", "contribution": _create_contribution(owner_id, payload)}


@app.get("/monthly-contributions")
def list_contributions(
    x_user_id: str | None = Header(default=None),
    user_id: int | None = None,
    fund_id: str | None = None,
    fund_type: str | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    return {
        "items": _list_contributions(
            _scope_user_id(acting, user_id), fund_id=fund_id, fund_type=fund_type
        )
    }


@app.put("/monthly-contributions/{contribution_id}")
def update_contribution(
    contribution_id: int,
    payload: MonthlyContributionUpdateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    acting = _require_user(x_user_id)
    contribution = _get_contribution(contribution_id)
    if not contribution or not _can_access(acting, contribution["user_id"]):
        raise HTTPException(status_code=404, detail="Contribution not found.")
    return {"status": "saved", "contribution": _update_contribution(contribution_id, payload)}


@app.delete("/monthly-contributions/{contribution_id}")
def delete_contribution(
    contribution_id: int, x_user_id: str | None = Header(default=None)
) -> dict:
    acting = _require_user(x_user_id)
    contribution = _get_contribution(contribution_id)
    if not contribution or not _can_access(acting, contribution["user_id"]):
        raise HTTPException(status_code=404, detail="Contribution not found.")
    _delete_contribution(contribution_id)
    return {"status": "deleted"}


@app.get("/dashboard")
def dashboard(
    x_user_id: str | None = Header(default=None), month: str | None = None
) -> dict:
    acting = _require_user(x_user_id)
    return _dashboard_summary(acting, month)


@app.get("/dashboard/annual")
def dashboard_annual(
    x_user_id: str | None = Header(default=None),
    year: int | None = None,
    user_id: int | None = None,
) -> dict:
    acting = _require_user(x_user_id)
    return _annual_report(_scope_user_id(acting, user_id), year or _utc_today().year)


@app.get("/dashboard/annual/export")
def dashboard_annual_export(
    x_user_id: str | None = Header(default=None),
    year: int | None = None,
    user_id: int | None = None,
) -> Response:
    acting = _require_user(x_user_id)
    report = _annual_report(_scope_user_id(acting, user_id), year or _utc_today().year)
    return Response(
        content=_build_annual_workbook(report),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={
            "Content-Disposition": f'attachment; filename="relatorio-anual-{report["year"]}.xlsx"'
        },
    )
