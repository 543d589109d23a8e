"""Safety gate for machine-generated analytical queries.

Generated queries are untrusted text. They run only after passing every check
here:

* no mutating keyword anywhere in the text, literals and comments included
* exactly one read-only statement (SELECT or WITH ... SELECT)
* every reference to the ``events`` table is scoped by the SELECT that reads
  it: that SELECT's WHERE clause holds ``<alias>.tenant_id = $tenant_id`` as a
  plain AND conjunct (the bare column only when the table is alone in FROM).
  Scoping is read from DuckDB's parse tree, not from the text.
* only ``$tenant_id``, ``$start`` and ``$end`` may be used as parameters, and
  ``tenant_id`` is never compared to anything but ``$tenant_id``
* no file readers, catalog tables or engine commands

The tenant id is always bound by the executor, never spliced into the text, so
the model never sees and cannot rewrite it.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set

import duckdb

from eventpulse.core.errors import ValidationRejectedError

EVENTS_TABLE = "events"

ALLOWED_PARAMETERS = ("tenant_id", "start", "end")

MUTATING_KEYWORDS = ("insert", "update", "delete", "drop", "alter", "create")

ENGINE_KEYWORDS = (
    "truncate", "attach", "detach", "copy", "pragma", "install", "load",
    "export", "import", "set", "reset", "call", "checkpoint", "vacuum", "grant",
)

_MUTATING_RE = re.compile(r"\b(" + "|".join(MUTATING_KEYWORDS) + r")\b", re.IGNORECASE)
_ENGINE_RE = re.compile(r"\b(" + "|".join(ENGINE_KEYWORDS) + r")\b")

_FORBIDDEN_FUNCTION_RE = re.compile(
    r"\b(read_\w+|\w+_scan|glob|getenv|query|query_table|current_setting|sniff_csv)\s*\("
)
_FORBIDDEN_CATALOG_RE = re.compile(
    r"\b(information_schema|pg_catalog|sqlite_master|duckdb_\w+|pragma_\w+)\b"
)
_FILE_TABLE_RE = re.compile(r"\b(from|join)\s+'")

_TENANT_PREDICATE_RE = re.compile(
    r"(?:\b(?:\w+\.)?tenant_id\s*=\s*\$tenant_id\b)|(?:\$tenant_id\s*=\s*(?:\w+\.)?tenant_id\b)"
)
_TENANT_COMPARISON_RE = re.compile(
    r"(?:(?<!\$)\btenant_id\s*(?:=|<>|!=|<|>|\bin\b|\blike\b|\bilike\b|\bbetween\b|\bis\b|\bglob\b|\bsimilar\b))"
    r"|(?:(?:=|<>|!=|<|>|\bin\b)\s*\(?\s*(?:\w+\.)?(?<!\$)\btenant_id\b)"
)
_PARAMETER_RE = re.compile(r"\$(\w*)")

_LIMIT_RE = re.compile(r"\blimit\b")
_TIME_RANGE_RE = re.compile(r"\b(?:\w+\.)?timestamp\s*(?:>=|>|<=|<|\bbetween\b)")

_FENCED_PATTERNS = (
    re.compile(r"```\s*sql\s*\n?(.*?)```", re.IGNORECASE | re.DOTALL),
    re.compile(r"```\s*\n?(.*?)```", re.DOTALL),
)
_BARE_QUERY_RE = re.compile(r"\b((?:with|select)\b.*?)(?:;|\n\s*\n|$)", re.IGNORECASE | re.DOTALL)


@dataclass
class QueryCheck:
    query: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def extract_query(response: str) -> Optional[str]:
    """
    Pull a single query out of a model response.

    Accepts ```sql fences, bare ``` fences, or a SELECT/WITH statement
    surrounded by prose. Returns None when nothing query-like is present.
    """
    if not response or not response.strip():
        return None

    for pattern in _FENCED_PATTERNS:
        match = pattern.search(response)
        if match:
            # Fenced text is taken as is; the safety gate decides whether it may run
            return match.group(1).strip().rstrip(";").strip() or None

    # Prose may mention "with" before the statement itself starts
    for match in _BARE_QUERY_RE.finditer(response):
        candidate = _clean_candidate(match.group(1))
        if candidate is not None:
            return candidate
    return None


def _clean_candidate(candidate: str) -> Optional[str]:
    candidate = candidate.strip().rstrip(";").strip()
    if not re.search(r"\bselect\b", candidate, re.IGNORECASE):
        return None
    return candidate


def mask_query(query: str) -> str:
    """
    Lowercased copy of the query with comments removed and the contents of
    string literals blanked out. Character offsets are preserved.
    """
    out = []
    i = 0
    n = len(query)
    while i < n:
        ch = query[i]
        nxt = query[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = query.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
            i = end
        elif ch == "/" and nxt == "*":
            end = query.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(" " * (end - i))
            i = end
        elif ch == "'":
            j = i + 1
            while j < n:
                if query[j] == "'":
                    if j + 1 < n and query[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            if j < n:
                out.append("'" + " " * (j - i - 1) + "'")
                i = j + 1
            else:
                # Unterminated literal swallows the rest of the text
                out.append("'" + " " * (n - i - 1))
                i = n
        else:
            out.append(ch.lower())
            i += 1

    return "".join(out)


def parse_tree(query: str) -> Dict[str, Any]:
    """DuckDB's own parse of the query (``json_serialize_sql``), without binding or running it"""
    with duckdb.connect(":memory:") as conn:
        raw = conn.execute("SELECT json_serialize_sql($query)", {"query": query}).fetchone()[0]
    return json.loads(raw)


def _walk(node: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(node, dict):
        yield node
        for value in node.values():
            yield from _walk(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk(item)


def _is_table_ref(node: Any) -> bool:
    # Expressions carry a "class"; table references do not
    return isinstance(node, dict) and "type" in node and "class" not in node


def _is_events_table(node: Dict[str, Any]) -> bool:
    return (
        _is_table_ref(node)
        and node.get("type") == "BASE_TABLE"
        and str(node.get("table_name", "")).lower() == EVENTS_TABLE
    )


def _from_items(ref: Any) -> List[Dict[str, Any]]:
    """Leaf table references of a FROM clause, joins flattened"""
    if not _is_table_ref(ref):
        return []
    if ref["type"] in ("JOIN", "CROSS_PRODUCT"):
        return _from_items(ref.get("left")) + _from_items(ref.get("right"))
    if ref["type"] in ("EMPTY", "EMPTY_FROM"):
        return []
    return [ref]


def _conjuncts(expression: Any) -> List[Dict[str, Any]]:
    if not isinstance(expression, dict):
        return []
    if expression.get("class") == "CONJUNCTION" and expression.get("type") == "CONJUNCTION_AND":
        return [part for child in expression.get("children", []) for part in _conjuncts(child)]
    return [expression]


def _strip_casts(expression: Any) -> Any:
    while isinstance(expression, dict) and expression.get("class") == "CAST":
        expression = expression.get("child")
    return expression


def _is_tenant_filter(conjunct: Dict[str, Any], qualifier: str, alone: bool) -> bool:
    if conjunct.get("class") != "COMPARISON" or conjunct.get("type") != "COMPARE_EQUAL":
        return False

    sides = [_strip_casts(conjunct.get("left")), _strip_casts(conjunct.get("right"))]
    parameters = [
        side for side in sides
        if isinstance(side, dict) and side.get("class") == "PARAMETER"
        and str(side.get("identifier", "")).lower() == "tenant_id"
    ]
    columns = [side for side in sides if isinstance(side, dict) and side.get("class") == "COLUMN_REF"]
    if len(parameters) != 1 or len(columns) != 1:
        return False

    names = [str(name).lower() for name in columns[0].get("column_names", [])]
    if not names or names[-1] != "tenant_id":
        return False
    if len(names) == 1:
        return alone
    return names[-2] == qualifier


def scope_report(tree: Dict[str, Any]) -> List[bool]:
    """
    One entry per ``events`` reference in the statement: True when the SELECT
    that reads it filters that very reference on ``tenant_id = $tenant_id``.
    References found outside any SELECT's FROM clause count as unscoped.
    """
    report = []
    seen: Set[int] = set()

    for node in _walk(tree.get("statements", [])):
        if "from_table" not in node:
            continue
        items = _from_items(node["from_table"])
        conjuncts = _conjuncts(node.get("where_clause"))
        for item in items:
            if not _is_events_table(item):
                continue
            seen.add(id(item))
            qualifier = str(item.get("alias") or item.get("table_name")).lower()
            report.append(any(_is_tenant_filter(c, qualifier, len(items) == 1) for c in conjuncts))

    for node in _walk(tree.get("statements", [])):
        if _is_events_table(node) and id(node) not in seen:
            report.append(False)

    return report


def validate_query(query: str) -> QueryCheck:
    check = QueryCheck(query=query)
    errors, warnings = check.errors, check.warnings

    if not query or not query.strip():
        errors.append("Query is empty")
        return check

    # Raw text: a mutating keyword inside a literal or comment still rejects
    mutating = sorted({match.group(1).upper() for match in _MUTATING_RE.finditer(query)})
    for keyword in mutating:
        errors.append(f"Mutating operation detected: {keyword}")

    masked = mask_query(query)
    body = masked.strip().rstrip(";").strip()

    if not re.match(r"^\(*\s*(select|with)\b", body):
        errors.append("Query must be a single SELECT statement")
    if ";" in body:
        errors.append("Multiple statements are not allowed")

    for keyword in sorted({match.group(1).upper() for match in _ENGINE_RE.finditer(body)}):
        errors.append(f"Engine command not allowed: {keyword}")

    if _FORBIDDEN_FUNCTION_RE.search(body) or _FILE_TABLE_RE.search(body):
        errors.append("Reading files or running nested queries is not allowed")
    if _FORBIDDEN_CATALOG_RE.search(body):
        errors.append("System catalog access is not allowed")
    if "?" in body:
        errors.append("Positional parameters are not allowed")

    unknown_params = sorted({name or "$" for name in _PARAMETER_RE.findall(body) if name not in ALLOWED_PARAMETERS})
    if unknown_params:
        errors.append(f"Unknown query parameters: {', '.join(unknown_params)}")

    # Strip valid predicates, then look for any other tenant_id comparison
    without_predicates = _TENANT_PREDICATE_RE.sub(lambda m: " " * len(m.group(0)), body)
    if _TENANT_COMPARISON_RE.search(without_predicates):
        errors.append("tenant_id may only be compared to $tenant_id")

    try:
        tree = parse_tree(query)
    except duckdb.Error as e:
        tree = {"error": True, "error_message": str(e)}

    if tree.get("error"):
        errors.append(f"Query could not be parsed: {tree.get('error_message', 'unknown error')}")
    else:
        report = scope_report(tree)
        if not any(report):
            errors.append("Query must filter on tenant_id = $tenant_id")
        elif not all(report):
            errors.append("Every reference to events must be filtered on tenant_id = $tenant_id")

    if not _LIMIT_RE.search(body):
        warnings.append("Consider adding a LIMIT clause for better performance")
    if not _TIME_RANGE_RE.search(body):
        warnings.append("Consider adding a timestamp range filter for better performance")

    return check


def query_parameters(query: str) -> Set[str]:
    """Named parameters the query actually uses (literals and comments ignored)"""
    return {name for name in _PARAMETER_RE.findall(mask_query(query)) if name}


def ensure_valid(query: str) -> QueryCheck:
    """Validate or raise ValidationRejectedError carrying the rejected query"""
    check = validate_query(query)
    if not check.is_valid:
        raise ValidationRejectedError(
            "Generated query rejected: " + "; ".join(check.errors),
            query=query,
            details=check.errors
        )
    return check
