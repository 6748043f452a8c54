import numpy as np
import pandas as pd
from typing import List, Dict, Any, Tuple, Optional
import io
import logging

from reach_import.domain.imports.errors import ParseError

logger = logging.getLogger(__name__)

# Tried in order; Windows-1256 covers legacy Arabic exports.
CSV_ENCODINGS = ("utf-8-sig", "cp1256")

EXCEL_EXTENSIONS = (".xlsx", ".xls")
CSV_EXTENSIONS = (".csv", ".txt")


def detect_file_type(file_name: str) -> str:
    """
    Detect upload type from the file extension.

    Returns:
    - 'csv' or 'excel'

    Raises:
    - ParseError: If the extension is not supported
    """
    lowered = (file_name or "").lower()
    if lowered.endswith(EXCEL_EXTENSIONS):
        return "excel"
    if lowered.endswith(CSV_EXTENSIONS):
        return "csv"
    raise ParseError(f"Unsupported file type for '{file_name}'. Upload a CSV or Excel file.")


def decode_csv_content(file_content: bytes) -> Tuple[str, str]:
    """Decode CSV bytes, returning ``(text, encoding_used)``."""
    for encoding in CSV_ENCODINGS:
        try:
            return file_content.decode(encoding), encoding
        except UnicodeDecodeError:
            logger.info("CSV content is not valid %s; trying next encoding", encoding)
    raise ParseError(f"Could not decode CSV file with any of: {', '.join(CSV_ENCODINGS)}")


def _frame_to_rows(df: pd.DataFrame) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Strip header whitespace, drop fully blank rows, and turn empty cells into None."""
    df.columns = [str(column).strip() for column in df.columns]
    headers = list(df.columns)
    if len(set(headers)) != len(headers):
        duplicates = sorted({h for h in headers if headers.count(h) > 1})
        raise ParseError(f"Duplicate column headers after trimming: {', '.join(duplicates)}")

    df = df.replace(r"^\s*$", np.nan, regex=True)
    df = df.dropna(how="all")

    records = df.to_dict("records")

    # Convert pandas NaN values to None for JSON and database compatibility
    for record in records:
        for key, value in record.items():
            if pd.isna(value):
                record[key] = None
            elif not isinstance(value, str):
                record[key] = str(value)

    return headers, records


def process_csv(file_content: bytes) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Read a CSV upload with every cell kept as a string."""
    text_content, encoding = decode_csv_content(file_content)
    try:
        df = pd.read_csv(
            io.StringIO(text_content),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ParseError(f"Could not read CSV file: {str(e)}") from e

    headers, records = _frame_to_rows(df)
    logger.info(f"Processed CSV ({encoding}): {len(records)} rows, columns: {headers}")
    return headers, records


def process_excel(file_content: bytes, sheet_name: Optional[str] = None) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Read the first (or named) sheet of an Excel upload with every cell kept as a string."""
    try:
        df = pd.read_excel(
            io.BytesIO(file_content),
            sheet_name=sheet_name if sheet_name is not None else 0,
            dtype=str,
            engine="openpyxl",
        )
    except Exception as e:
        raise ParseError(f"Could not read Excel file: {str(e)}") from e

    headers, records = _frame_to_rows(df)
    logger.info(f"Processed Excel: {len(records)} rows, columns: {headers}")
    return headers, records


def parse_upload(file_content: bytes, file_name: str) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Parse an uploaded route file into ``(headers, rows)``.

    Raises:
        ParseError: unsupported extension, undecodable bytes, or unreadable structure
    """
    if not file_content:
        raise ParseError(f"File '{file_name}' is empty")
    file_type = detect_file_type(file_name)
    if file_type == "excel":
        headers, records = process_excel(file_content)
    else:
        headers, records = process_csv(file_content)
    if not headers:
        raise ParseError(f"File '{file_name}' has no header row")
    return headers, records
