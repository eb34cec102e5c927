import csv
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional

from models import TransactionType
from schemas import ImportedTransaction

HEADER_MARKER = "Fecha Posteo"
ACCOUNT_MARKER = "Cuenta:"
BANK_NAME = "Popular Dominicano"


@dataclass
class StatementParseResult:
    transactions: list[ImportedTransaction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    account: str = ""
    bank: str = BANK_NAME
    date_range: str = ""


def parse_date(value: str) -> datetime:
    value = value.strip()
    try:
        return datetime.strptime(value, "%d/%m/%Y")
    except ValueError:
        return datetime.strptime(value, "%Y-%m-%d")


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("RD$", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", "")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def decode_statement(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _detect_delimiter(header_line: str) -> str:
    if "|" in header_line:
        return "|"
    if ";" in header_line:
        return ";"
    return ","


def _classify(short_description: str, description: str) -> Optional[TransactionType]:
    if "Débito" in short_description or "PAGO IMPUESTO" in description:
        return TransactionType.debit
    if "Crédito" in short_description:
        return TransactionType.credit
    return None


def parse_bank_statement(content: str) -> StatementParseResult:
    """
    Parse a bank statement export. Metadata lines precede the header row;
    rows that are neither debits nor credits (holds, notes) are skipped.
    """
    lines = content.splitlines()
    result = StatementParseResult()

    for line in lines[:8]:
        if ACCOUNT_MARKER in line:
            result.account = line.replace(ACCOUNT_MARKER, "").strip().strip(",;|")
            break
    if len(lines) > 2:
        result.date_range = lines[2].strip()

    header_index = next(
        (i for i, line in enumerate(lines) if HEADER_MARKER in line), None
    )
    if header_index is None:
        raise ValueError(
            "CSV format not recognized. Please upload a valid bank statement CSV file."
        )

    delimiter = _detect_delimiter(lines[header_index])
    body = "\n".join(
        line for line in lines[header_index:] if line.strip()
    )
    reader = csv.DictReader(StringIO(body), delimiter=delimiter)
    if reader.fieldnames:
        reader.fieldnames = [name.strip() for name in reader.fieldnames]

    for idx, raw in enumerate(reader, start=1):
        posted = (raw.get("Fecha Posteo") or "").strip()
        amount_raw = (raw.get("Monto Transacción") or "").strip()
        short = (raw.get("Descripción Corta") or "").strip()
        description = (raw.get("Descripción") or "").strip()
        if not posted or not amount_raw:
            continue
        txn_type = _classify(short, description)
        if txn_type is None:
            continue
        try:
            result.transactions.append(
                ImportedTransaction(
                    type=txn_type,
                    amount_cents=parse_amount(amount_raw),
                    description=description or None,
                    bank_description=description or None,
                    date=parse_date(posted),
                    reference=(raw.get("No. Referencia") or "").strip() or None,
                    serial=(raw.get("No. Serial") or "").strip() or None,
                )
            )
        except ValueError as exc:
            result.errors.append(f"Row {idx}: {exc}")

    if not result.transactions and not result.errors:
        raise ValueError(
            "No transactions found in the CSV file. Please check the format."
        )
    return result
