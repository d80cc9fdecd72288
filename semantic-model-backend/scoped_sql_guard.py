"""
Scoped SQL Guard - Table Scope Enforcement for Hand-Written SQL
===============================================================

Hand-written SQL may only read the tables the caller scoped the request to.
The guard finds every table reference, maps it to exactly one scoped table,
and rewrites it to that table's canonical runtime identifier.

PIPELINE:
1. Lookup: every acceptable spelling of each scoped table
   (canonical, project.dataset.table, dataset.table, table, dataset_table,
   project_dataset_table) in an exact map and a relaxed alphanumeric map
2. Tokenize: sqlparse lexer stream, reading references after FROM, JOIN
   variants, TABLE, UPDATE, INTO, DELETE FROM, comma-separated FROM lists
   and inside parenthesized joins (subqueries are scanned; CTE names,
   UNNEST(...) and EXTRACT(x FROM y) are skipped). Anything else in table
   position is blocked.
3. Resolve: exact match first, relaxed second
   - several candidates -> AmbiguousTableReferenceError
   - no candidate       -> BlockedTableReferenceError
4. Rewrite: only the identifier tokens are replaced, so aliases, comments
   and formatting survive

FAIL CLOSED: no SQL is returned unless every reference resolved.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlparse import lexer
from sqlparse import tokens as T

from errors import AmbiguousTableReferenceError, BlockedTableReferenceError
from model_catalog import BIGQUERY_ENGINE, ModelTable

logger = logging.getLogger(__name__)

Token = Tuple[object, str]

# Keywords that end an identifier; anything else lexed as a keyword
# (user, events, data, ...) may still be a table name.
STRUCTURAL_KEYWORDS = {
    "FROM", "WHERE", "ON", "USING", "AS", "SELECT", "WITH", "GROUP BY", "ORDER BY",
    "HAVING", "LIMIT", "OFFSET", "UNION", "ALL", "INTERSECT", "EXCEPT", "SET", "VALUES",
    "LEFT", "RIGHT", "INNER", "OUTER", "FULL", "CROSS", "NATURAL", "QUALIFY", "WINDOW",
    "AND", "OR", "NOT", "LATERAL", "DISTINCT", "INTO", "UPDATE", "DELETE", "INSERT",
    "TABLE", "ONLY", "UNION ALL",
}

# A FROM list ends at these keywords (at the same nesting depth)
FROM_LIST_TERMINATORS = {
    "WHERE", "GROUP BY", "ORDER BY", "HAVING", "LIMIT", "OFFSET", "UNION", "INTERSECT",
    "EXCEPT", "QUALIFY", "WINDOW", "SELECT", "SET", "VALUES",
}

# May sit between a table keyword and the table expression
TABLE_MODIFIERS = {"LATERAL", "ONLY"}


@dataclass(frozen=True)
class ScopedTable:
    """A table hand-written SQL may read, with the parts used to spell it"""
    canonical: str
    project: Optional[str] = None
    dataset: Optional[str] = None
    table: Optional[str] = None
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TableReference:
    keyword: str
    identifier: str
    alias: Optional[str]
    start: int
    end: int
    resolvable: bool = True


# ============================================================================
# IDENTIFIER HELPERS
# ============================================================================

def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == "`":
        return value[1:-1].replace("``", "`")
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('""', '"')
    return value


def normalize_reference(value: str) -> str:
    """Lower-cased dotted form with quoting removed: `p.d.t` and "p"."d"."t" both give p.d.t"""
    parts = re.split(r'\.(?=(?:[^"`]*["`][^"`]*["`])*[^"`]*$)', str(value or "").strip())
    return ".".join(_unquote(p.strip()) for p in parts if p.strip()).lower()


def relax_reference(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(value or "").lower())


def table_spellings(table: ScopedTable) -> Set[str]:
    spellings = {normalize_reference(table.canonical)}
    project = (table.project or "").lower()
    dataset = (table.dataset or "").lower()
    name = (table.table or "").lower()
    if name:
        spellings.add(name)
        if dataset:
            spellings.add(f"{dataset}.{name}")
            spellings.add(f"{dataset}_{name}")
            if project:
                spellings.add(f"{project}.{dataset}.{name}")
                spellings.add(f"{project}_{dataset}_{name}")
    for alias in table.aliases:
        if alias:
            spellings.add(normalize_reference(alias))
    return {s for s in spellings if s}


def scoped_table_for(table: ModelTable) -> ScopedTable:
    """Spellings for one catalog table: runtime names plus the model's dataset/table names."""
    canonical = table.runtime_ref or ""
    if table.runtime_engine == BIGQUERY_ENGINE:
        parts = normalize_reference(canonical).split(".")
        project = table.project_id or (parts[0] if len(parts) == 3 else None)
        return ScopedTable(
            canonical=canonical,
            project=project,
            dataset=table.dataset_name,
            table=table.table_name,
        )

    parts = [p for p in normalize_reference(canonical).split(".") if p]
    schema = table.runtime_schema or (parts[-2] if len(parts) >= 2 else None)
    runtime_table = table.runtime_table or (parts[-1] if parts else None)
    aliases = []
    if table.table_name:
        aliases.append(table.table_name)
        if table.dataset_name:
            aliases.append(f"{table.dataset_name}.{table.table_name}")
            aliases.append(f"{table.dataset_name}_{table.table_name}")
    return ScopedTable(
        canonical=canonical,
        dataset=schema,
        table=runtime_table,
        aliases=tuple(aliases),
    )


def scoped_tables_for(tables: Iterable[ModelTable]) -> List[ScopedTable]:
    return [scoped_table_for(t) for t in tables if t.runtime_ref]


# ============================================================================
# TOKEN SCANNER
# ============================================================================

def _is_trivia(token: Token) -> bool:
    ttype = token[0]
    return ttype in T.Whitespace or ttype in T.Newline or ttype in T.Comment


def _next_significant(tokens: List[Token], start: int) -> Optional[int]:
    for i in range(start, len(tokens)):
        if not _is_trivia(tokens[i]):
            return i
    return None


def _prev_significant(tokens: List[Token], start: int) -> Optional[int]:
    for i in range(start, -1, -1):
        if not _is_trivia(tokens[i]):
            return i
    return None


def _keyword(token: Token) -> Optional[str]:
    ttype, value = token
    if ttype in T.Keyword:
        return re.sub(r"\s+", " ", value.upper())
    return None


def _is_punct(token: Token, value: str) -> bool:
    return token[0] in T.Punctuation and token[1] == value


def _is_identifier_part(token: Token) -> bool:
    ttype, value = token
    if ttype in T.Name or ttype in T.String.Symbol:
        return True
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return True
    keyword = _keyword(token)
    if keyword is None or ttype in T.Keyword.DML or ttype in T.Keyword.CTE:
        return False
    return keyword not in STRUCTURAL_KEYWORDS and not keyword.endswith("JOIN")


def _is_query_start(token: Token) -> bool:
    keyword = _keyword(token)
    return keyword in ("SELECT", "WITH", "TABLE", "VALUES")


def _skip_parens(tokens: List[Token], open_index: int) -> int:
    """Index just past the parenthesis group opened at open_index."""
    depth = 0
    for i in range(open_index, len(tokens)):
        if _is_punct(tokens[i], "("):
            depth += 1
        elif _is_punct(tokens[i], ")"):
            depth -= 1
            if depth == 0:
                return i + 1
    return len(tokens)


def collect_cte_names(tokens: List[Token]) -> Set[str]:
    """Names declared in every WITH name AS (...), name AS (...) list."""
    names: Set[str] = set()
    for i, token in enumerate(tokens):
        if _keyword(token) != "WITH":
            continue
        j = _next_significant(tokens, i + 1)
        if j is not None and _keyword(tokens[j]) == "RECURSIVE":
            j = _next_significant(tokens, j + 1)
        while j is not None and _is_identifier_part(tokens[j]):
            names.add(_unquote(tokens[j][1]).lower())
            j = _next_significant(tokens, j + 1)
            if j is not None and _is_punct(tokens[j], "("):
                # column list
                j = _next_significant(tokens, _skip_parens(tokens, j))
            if j is None or _keyword(tokens[j]) != "AS":
                break
            j = _next_significant(tokens, j + 1)
            if j is not None and _keyword(tokens[j]) in ("MATERIALIZED", "NOT MATERIALIZED"):
                j = _next_significant(tokens, j + 1)
            if j is None or not _is_punct(tokens[j], "("):
                break
            j = _next_significant(tokens, _skip_parens(tokens, j))
            if j is None or not _is_punct(tokens[j], ","):
                break
            j = _next_significant(tokens, j + 1)
    return names


def _table_keyword(tokens: List[Token], index: int) -> Optional[str]:
    keyword = _keyword(tokens[index])
    if keyword is None:
        return None
    if keyword.endswith("JOIN"):
        return keyword
    if keyword in ("UPDATE", "INTO", "TABLE"):
        return keyword
    if keyword == "FROM":
        prev = _prev_significant(tokens, index - 1)
        prev_keyword = _keyword(tokens[prev]) if prev is not None else None
        if prev_keyword == "DISTINCT":
            # IS [NOT] DISTINCT FROM
            return None
        if prev_keyword == "DELETE":
            return "DELETE FROM"
        return "FROM"
    return None


def _read_reference(tokens: List[Token], j: int, keyword: str,
                    cte_names: Set[str]) -> Tuple[Optional[TableReference], int]:
    """Read one table reference (plus optional alias) starting at identifier index j."""
    parts = [_unquote(tokens[j][1])]
    separators = []
    end = j + 1
    while end + 1 < len(tokens):
        sep = tokens[end]
        if not (_is_punct(sep, ".") or (sep[0] in T.Operator and sep[1] == "-")):
            break
        if not _is_identifier_part(tokens[end + 1]):
            break
        separators.append(sep[1])
        parts.append(_unquote(tokens[end + 1][1]))
        end += 2

    identifier = parts[0]
    for sep, part in zip(separators, parts[1:]):
        identifier += sep + part

    if end < len(tokens) and _is_punct(tokens[end], "(") and identifier.upper() == "UNNEST":
        return None, _skip_parens(tokens, end)

    alias = None
    cursor = end
    k = _next_significant(tokens, end)
    if k is not None and _keyword(tokens[k]) == "AS":
        k = _next_significant(tokens, k + 1)
    if k is not None and tokens[k][0] in T.Name:
        alias = _unquote(tokens[k][1])
        cursor = k + 1

    if len(parts) == 1 and identifier.lower() in cte_names:
        return None, cursor

    return TableReference(keyword=keyword, identifier=identifier, alias=alias, start=j, end=end), cursor


def scan_table_references(tokens: List[Token]) -> List[TableReference]:
    """
    Every table reference in the token stream.

    A token in table position that is neither a name nor a parenthesized
    query or join comes back as an unresolvable reference.
    """
    cte_names = collect_cte_names(tokens)
    references: List[TableReference] = []
    # one entry per open paren: True when it holds a query or a join expression
    stack: List[bool] = []
    from_depths: Set[int] = set()
    # index of the token that must start a table expression
    expect: Optional[int] = None
    expect_keyword = "FROM"

    i = 0
    while i < len(tokens):
        token = tokens[i]
        depth = len(stack)

        if i == expect:
            expect = None
            if _is_punct(token, "("):
                nxt = _next_significant(tokens, i + 1)
                stack.append(True)
                if nxt is not None and not _is_query_start(tokens[nxt]):
                    # (a JOIN b ON ...): its first item is a table expression too
                    expect = nxt
                    from_depths.add(depth + 1)
                i += 1
                continue
            if _keyword(token) in TABLE_MODIFIERS:
                expect = _next_significant(tokens, i + 1)
                i += 1
                continue
            if _is_identifier_part(token):
                ref, i = _read_reference(tokens, i, expect_keyword, cte_names)
                if ref is not None:
                    references.append(ref)
                continue
            references.append(TableReference(
                keyword=expect_keyword, identifier=token[1], alias=None,
                start=i, end=i + 1, resolvable=False,
            ))

        if _is_punct(token, "("):
            nxt = _next_significant(tokens, i + 1)
            stack.append(nxt is not None and _is_query_start(tokens[nxt]))
            i += 1
            continue
        if _is_punct(token, ")"):
            from_depths.discard(depth)
            if stack:
                stack.pop()
            i += 1
            continue

        in_query_scope = not stack or stack[-1]
        keyword = _table_keyword(tokens, i)
        # TABLE x reads a whole table wherever it appears
        if keyword is not None and (in_query_scope or keyword == "TABLE"):
            expect = _next_significant(tokens, i + 1)
            expect_keyword = keyword
            if keyword in ("FROM", "DELETE FROM"):
                from_depths.add(depth)
            i += 1
            continue

        if depth in from_depths:
            if _is_punct(token, ","):
                expect = _next_significant(tokens, i + 1)
                expect_keyword = "FROM"
                i += 1
                continue
            if _keyword(token) in FROM_LIST_TERMINATORS:
                from_depths.discard(depth)

        i += 1

    return references


def tokenize_table_references(sql: str) -> List[TableReference]:
    return scan_table_references(list(lexer.tokenize(sql)))


# ============================================================================
# GUARD
# ============================================================================

class ScopedSQLGuard:
    """Rewrites hand-written SQL so it can only touch the scoped tables"""

    def __init__(self, tables: Iterable[ScopedTable]):
        self.tables = list(tables)
        self.exact: Dict[str, Set[str]] = {}
        self.relaxed: Dict[str, Set[str]] = {}
        for table in self.tables:
            for spelling in table_spellings(table):
                self.exact.setdefault(spelling, set()).add(table.canonical)
                relaxed = relax_reference(spelling)
                if relaxed:
                    self.relaxed.setdefault(relaxed, set()).add(table.canonical)

    def candidates(self, identifier: str) -> Set[str]:
        exact = self.exact.get(normalize_reference(identifier))
        if exact:
            return exact
        return self.relaxed.get(relax_reference(identifier), set())

    def rewrite(self, sql: str) -> str:
        """
        Rewrite every table reference to its canonical identifier.

        Raises:
            AmbiguousTableReferenceError: a reference matches several scoped tables
            BlockedTableReferenceError: a reference matches no scoped table
        """
        tokens = list(lexer.tokenize(sql))
        references = scan_table_references(tokens)

        ambiguous: List[str] = []
        blocked: List[str] = []
        replacements: Dict[int, Tuple[int, str]] = {}
        for ref in references:
            matches = self.candidates(ref.identifier) if ref.resolvable else set()
            if len(matches) > 1:
                ambiguous.append(ref.identifier)
            elif not matches:
                blocked.append(ref.identifier)
            else:
                replacements[ref.start] = (ref.end, next(iter(matches)))

        if ambiguous:
            logger.warning(f"[BLOCKED] Ambiguous table reference(s): {ambiguous}")
            raise AmbiguousTableReferenceError(_unique(ambiguous))
        if blocked:
            logger.warning(f"[BLOCKED] Out-of-scope table reference(s): {blocked}")
            raise BlockedTableReferenceError(_unique(blocked))

        out = []
        i = 0
        while i < len(tokens):
            if i in replacements:
                end, canonical = replacements[i]
                out.append(canonical)
                i = end
                continue
            out.append(tokens[i][1])
            i += 1

        logger.info(f"[OK] Scoped SQL rewrite: {len(references)} reference(s) resolved")
        return "".join(out)


def _unique(values: List[str]) -> List[str]:
    seen = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen
