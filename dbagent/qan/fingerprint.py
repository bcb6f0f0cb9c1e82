"""
DB Agent - Query Fingerprint Module

Normalizes a query into its fingerprint: the query with literal values
replaced by placeholders, so similar queries aggregate into one class.
Follows pt-query-digest's rules.
"""

import hashlib
import re

_ADMIN_RE = re.compile(r'^\s*administrator command:', re.IGNORECASE)
_USE_RE = re.compile(r'^\s*use\s+\S+\s*;?\s*$', re.IGNORECASE)
_CALL_RE = re.compile(r'^\s*call\s+(\S+?)\s*\(', re.IGNORECASE)

_BLOCK_COMMENT_RE = re.compile(r'/\*[^!].*?\*/', re.DOTALL)
_LINE_COMMENT_RE = re.compile(r'(?:^|(?<=\s))(?:--\s|#)[^\n]*', re.MULTILINE)

_STRING_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'|\"(?:[^\"\\]|\\.|\"\")*\"")
_HEX_RE = re.compile(r'\b0x[0-9a-f]+\b|\bx\'[0-9a-f]*\'')
_NUMBER_RE = re.compile(r'(?<![\w.])[-+]?\d+(?:\.\d*)?(?:e[-+]?\d+)?\b|(?<![\w.])\.\d+\b')
_NULL_RE = re.compile(r'\bnull\b')
_TRUE_FALSE_RE = re.compile(r'\b(?:true|false)\b')
_IN_LIST_RE = re.compile(r'\bin\s*\(\s*\?(?:\s*,\s*\?)*\s*\)')
_VALUES_RE = re.compile(r'\bvalues?\s*\([^)]*\)(?:\s*,\s*\([^)]*\))*')
_LIMIT_RE = re.compile(r'\blimit \?(?:\s*,\s*\?| offset \?)?')
_ORDER_ASC_RE = re.compile(r'\b(order by .+?)\s+asc\b')
_WHITESPACE_RE = re.compile(r'\s+')


def fingerprint(query: str) -> str:
    """Fingerprint a query

    Args:
        query: Query text as logged by MySQL

    Returns:
        Lower-case fingerprint with literals replaced by ?
    """
    if _ADMIN_RE.match(query):
        return query.strip().rstrip(';')

    if _USE_RE.match(query):
        return "use ?"

    call = _CALL_RE.match(query)
    if call:
        return f"call {call.group(1).lower()}"

    fp = _BLOCK_COMMENT_RE.sub(' ', query)
    fp = _LINE_COMMENT_RE.sub(' ', fp)
    fp = fp.strip().rstrip(';').lower()

    fp = _HEX_RE.sub('?', fp)
    fp = _STRING_RE.sub('?', fp)
    fp = _NUMBER_RE.sub('?', fp)
    fp = _NULL_RE.sub('?', fp)
    fp = _TRUE_FALSE_RE.sub('?', fp)

    fp = _WHITESPACE_RE.sub(' ', fp).strip()

    fp = _IN_LIST_RE.sub('in(?+)', fp)
    fp = _VALUES_RE.sub('values(?+)', fp)
    fp = _LIMIT_RE.sub('limit ?', fp)
    fp = _ORDER_ASC_RE.sub(r'\1', fp)

    return fp


def class_id(fp: str) -> str:
    """Class id of a fingerprint: last 16 hex digits of its MD5, upper-case"""
    return hashlib.md5(fp.encode('utf-8')).hexdigest()[-16:].upper()
