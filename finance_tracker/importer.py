"""Bank statement import: parse CSV/OFX exports into candidate transactions,
then resolve and commit the rows the user approved."""

import logging
import math
import re
import unicodedata
from collections import namedtuple
from datetime import datetime

from .db import STORE_ERRORS

logger = logging.getLogger(__name__)

CSV_PLACEHOLDER = "Imported transaction"
OFX_PLACEHOLDER = "Imported OFX transaction"
KINDS = ("income", "expense")

FIELD_ALIASES = {
    "date": ("date", "data", "data da transação"),
    "description": ("description", "descrição", "histórico"),
    "amount": ("amount", "valor", "quantia"),
    "category": ("category", "categoria"),
    "account": ("account", "conta"),
}
OFX_TAG_ALIASES = {
    "date": ("dtposted",),
    "description": ("memo",),
    "amount": ("trnamt",),
}
CSV_DEFAULTS = {"amount": "0", "description": CSV_PLACEHOLDER}
OFX_DEFAULTS = {"description": OFX_PLACEHOLDER}

ISO_DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
]
# Slashed dates read month first unless the column holds a day above 12.
DATE_FORMATS = ISO_DATE_FORMATS + ["%m/%d/%Y"]
DAY_FIRST_DATE_FORMATS = ISO_DATE_FORMATS + ["%d/%m/%Y"]
SLASHED_DATE = re.compile(r"\s*(\d{1,2})/(\d{1,2})/\d{4}")
LEADING_NUMBER = re.compile(r"\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)")
OFX_DATE = re.compile(r"\d{8}")
OFX_AMOUNT = re.compile(r"[-\d.]+")
OFX_OPEN = re.compile(r"<STMTTRN>", re.IGNORECASE)
OFX_CLOSE = re.compile(r"</STMTTRN>", re.IGNORECASE)
DECODINGS = ["utf-8-sig", "utf-8", "cp1252"]

CandidateTransaction = namedtuple(
    "CandidateTransaction",
    ["date", "description", "amount", "kind", "category", "account"],
)
ResolvedTransaction = namedtuple(
    "ResolvedTransaction",
    ["user_id", "account_id", "category_id", "description", "amount", "kind", "date"],
)
ParseResult = namedtuple("ParseResult", ["transactions", "skipped"])
CommitResult = namedtuple("CommitResult", ["imported", "message"])


class ImportPipelineError(Exception):
    status_code = 400
    default_message = "Import failed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class UnsupportedFormat(ImportPipelineError):
    default_message = "Unsupported file format"


class UndecodableFile(ImportPipelineError):
    default_message = "File could not be decoded as text"


class InvalidSubmission(ImportPipelineError):
    default_message = "Invalid transaction data"


class NoDestinationAccount(ImportPipelineError):
    default_message = "No account found to import transactions into"


class PersistenceFailed(ImportPipelineError):
    status_code = 500
    default_message = "Failed to save imported transactions"


class MalformedRow(ValueError):
    """A single CSV row or OFX block that cannot become a transaction."""


def build_alias_index(aliases):
    return {name: (field, rank) for field, names in aliases.items() for rank, name in enumerate(names)}


def normalize_fields(bag, aliases=FIELD_ALIASES, defaults=CSV_DEFAULTS):
    """Map a {lower-cased header: raw value} bag onto the canonical fields.

    When several aliases of one field carry a value, the one listed first in
    ``aliases`` wins, whatever order the bag iterates in.
    """
    index = build_alias_index(aliases)

    best = {}
    for key, raw in bag.items():
        match = index.get(key)
        value = (raw or "").strip()
        if match is None or not value:
            continue
        field, rank = match
        if field not in best or rank < best[field][0]:
            best[field] = (rank, value)

    fields = {field: None for field in aliases}
    fields.update({field: value for field, (_, value) in best.items()})
    for field, default in defaults.items():
        if not fields.get(field):
            fields[field] = default
    return fields


def slashed_date_formats(values):
    """Pick one day/month order for a whole date column.

    Day first only when some value cannot be month first and none cannot be
    day first; every row of the file is then read the same way.
    """
    day_first = month_first = False
    for value in values:
        match = SLASHED_DATE.match(value or "")
        if match is None:
            continue
        if int(match.group(1)) > 12:
            day_first = True
        if int(match.group(2)) > 12:
            month_first = True
    return DAY_FIRST_DATE_FORMATS if day_first and not month_first else DATE_FORMATS


def parse_candidate_date(value, formats=DATE_FORMATS):
    cleaned = (value or "").strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1]
    if not cleaned:
        return None
    for fmt in formats:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value):
    """Leading signed decimal of ``value``; anything non-numeric reads as 0."""
    match = LEADING_NUMBER.match(value or "")
    if not match:
        return 0.0
    amount = float(match.group(1))
    return amount if math.isfinite(amount) else 0.0


def build_candidate(fields, date_formats=DATE_FORMATS):
    parsed_date = parse_candidate_date(fields.get("date"), date_formats)
    if parsed_date is None:
        raise MalformedRow(f"invalid date {fields.get('date')!r}")

    signed = parse_amount(fields.get("amount"))
    return CandidateTransaction(
        date=parsed_date.isoformat(),
        description=fields.get("description"),
        amount=round(abs(signed), 2),
        kind="income" if signed >= 0 else "expense",
        category=fields.get("category"),
        account=fields.get("account"),
    )


def _split_csv_line(line):
    return [cell.strip().replace('"', "") for cell in line.split(",")]


def parse_csv(content):
    lines = [(number, line) for number, line in enumerate(content.splitlines(), start=1) if line.strip()]
    if not lines:
        return ParseResult([], [])

    headers = [unicodedata.normalize("NFC", cell).lower() for cell in _split_csv_line(lines[0][1])]
    rows = [(line_number, normalize_fields(dict(zip(headers, _split_csv_line(line))))) for line_number, line in lines[1:]]
    date_formats = slashed_date_formats(fields["date"] for _, fields in rows)

    transactions = []
    skipped = []
    for line_number, fields in rows:
        try:
            transactions.append(build_candidate(fields, date_formats))
        except MalformedRow as exc:
            logger.debug("Dropping CSV line %s: %s", line_number, exc)
            skipped.append({"line": line_number, "reason": str(exc)})
    return ParseResult(transactions, skipped)


def iter_ofx_blocks(content):
    """Yield (body, terminated) for every <STMTTRN> block, in file order."""
    position = 0
    while True:
        opening = OFX_OPEN.search(content, position)
        if opening is None:
            return
        closing = OFX_CLOSE.search(content, opening.end())
        if closing is None:
            yield content[opening.end():], False
            return
        yield content[opening.end():closing.start()], True
        position = closing.end()


def iter_ofx_tags(block):
    """Yield (TAG, text) for each opening tag; text runs to the next tag or end of line."""
    position = 0
    while True:
        start = block.find("<", position)
        if start == -1:
            return
        end = block.find(">", start + 1)
        if end == -1:
            return
        name = block[start + 1:end].strip()
        next_tag = block.find("<", end + 1)
        text = block[end + 1:] if next_tag == -1 else block[end + 1:next_tag]
        position = end + 1
        if name and not name.startswith("/"):
            yield name.upper(), text


def ofx_block_fields(block):
    tags = {}
    for name, text in iter_ofx_tags(block):
        tags.setdefault(name.lower(), text)

    date_match = OFX_DATE.match(tags.get("dtposted", ""))
    if not date_match:
        raise MalformedRow("missing or invalid DTPOSTED")
    amount_match = OFX_AMOUNT.match(tags.get("trnamt", ""))
    try:
        signed = float(amount_match.group(0)) if amount_match else None
    except ValueError:
        signed = None
    if signed is None or not math.isfinite(signed):
        raise MalformedRow("missing or invalid TRNAMT")

    digits = date_match.group(0)
    bag = {
        "dtposted": f"{digits[:4]}-{digits[4:6]}-{digits[6:8]}",
        "trnamt": amount_match.group(0),
        "memo": (tags.get("memo") or "").split("\n")[0],
    }
    return normalize_fields(bag, OFX_TAG_ALIASES, OFX_DEFAULTS)


def parse_ofx(content):
    transactions = []
    skipped = []
    for number, (block, terminated) in enumerate(iter_ofx_blocks(content), start=1):
        try:
            if not terminated:
                raise MalformedRow("unterminated STMTTRN block")
            transactions.append(build_candidate(ofx_block_fields(block)))
        except MalformedRow as exc:
            logger.debug("Dropping OFX block %s: %s", number, exc)
            skipped.append({"block": number, "reason": str(exc)})
    return ParseResult(transactions, skipped)


PARSERS = {"csv": parse_csv, "ofx": parse_ofx}
SUPPORTED_EXTENSIONS = tuple(PARSERS)


def statement_extension(filename):
    return (filename or "").rsplit(".", 1)[-1].strip().lower()


def decode_statement_bytes(file_bytes):
    for encoding in DECODINGS:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise UndecodableFile()


def parse_statement(filename, content):
    extension = statement_extension(filename)
    parser = PARSERS.get(extension)
    if parser is None:
        raise UnsupportedFormat(f"Unsupported file format: .{extension}" if extension else None)
    if isinstance(content, bytes):
        content = decode_statement_bytes(content)
    return parser(content)


def candidate_to_dict(candidate):
    payload = {
        "date": candidate.date,
        "description": candidate.description,
        "amount": candidate.amount,
        "type": candidate.kind,
    }
    if candidate.category:
        payload["category"] = candidate.category
    if candidate.account:
        payload["account"] = candidate.account
    return payload


def preview_payload(result):
    count = len(result.transactions)
    return {
        "transactions": [candidate_to_dict(candidate) for candidate in result.transactions],
        "count": count,
        "message": f"{count} transactions found",
        "skipped": result.skipped,
    }


def candidate_from_payload(item):
    """Rebuild a candidate from the JSON the client sends back for confirmation."""
    if not isinstance(item, dict):
        raise InvalidSubmission()

    parsed_date = parse_candidate_date(str(item.get("date") or ""))
    kind = item.get("type", item.get("kind"))
    amount = item.get("amount")
    if isinstance(amount, str):
        amount = parse_amount(amount) if LEADING_NUMBER.match(amount) else None
    if parsed_date is None or kind not in KINDS:
        raise InvalidSubmission()
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount < 0:
        raise InvalidSubmission()

    description = str(item.get("description") or "").strip() or CSV_PLACEHOLDER
    category = item.get("category")
    account = item.get("account")
    return CandidateTransaction(
        date=parsed_date.isoformat(),
        description=description,
        amount=round(float(amount), 2),
        kind=kind,
        category=str(category) if category else None,
        account=str(account) if account else None,
    )


def _category_key(name):
    return (name or "").strip().casefold()


def resolve_candidates(candidates, categories, accounts, user_id):
    if not accounts:
        raise NoDestinationAccount()

    # Per-row account hints are not used; everything lands in the first account.
    account_id = accounts[0]["id"]
    category_ids = {}
    for category in categories:
        category_ids.setdefault(_category_key(category["name"]), category["id"])

    resolved = []
    for candidate in candidates:
        category_id = category_ids.get(_category_key(candidate.category)) if candidate.category else None
        resolved.append(
            ResolvedTransaction(
                user_id=user_id,
                account_id=account_id,
                category_id=category_id,
                description=candidate.description,
                amount=candidate.amount,
                kind=candidate.kind,
                date=candidate.date,
            )
        )
    return resolved


def commit_import(store, user_id, candidates):
    accounts = store.list_accounts(user_id)
    categories = store.list_categories(user_id)
    resolved = resolve_candidates(candidates, categories, accounts, user_id)

    try:
        with store.transaction():
            imported = store.insert_transactions([row._asdict() for row in resolved])
    except STORE_ERRORS as exc:
        logger.exception("Batch insert of %s imported transactions failed", len(resolved))
        raise PersistenceFailed() from exc

    logger.info("Imported %s transactions for user %s", imported, user_id)
    return CommitResult(imported, f"{imported} transactions imported successfully")
