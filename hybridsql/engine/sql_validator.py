# HybridSQL - SQL Validator
# =========================
"""
SQL Validator
=============
Validates generated SQL before it is executed:
1. Read-only (SELECT / WITH ... SELECT only)
2. Dangerous operations and injection patterns
3. Table existence against the selected schema
4. Optional EXPLAIN dry run for syntax

Violations are reported, never corrected: the SQL that passes is the SQL
that was generated.
"""

import re
import logging
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass

from .models import ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class ValidatorConfig:
    """Configuration for SQL validator."""
    block_delete: bool = True
    block_update: bool = True
    block_drop: bool = True
    block_insert: bool = True
    block_truncate: bool = True
    block_alter: bool = True
    block_create: bool = True

    # Block information schema access (potential info disclosure)
    block_info_schema: bool = True

    # Maximum query complexity (number of joins) before warning
    max_joins: int = 5

    # Run EXPLAIN through the executor when one is given
    explain_check: bool = True


def tables_from_schema(schema: Dict[str, Any]) -> Dict[str, List[str]]:
    """Table -> column names, from a (slim) schema dict."""
    tables: Dict[str, List[str]] = {}
    for name, table_def in schema.items():
        columns = table_def.get('columns', {}) if isinstance(table_def, dict) else {}
        tables[name] = list(columns.keys()) if isinstance(columns, dict) else list(columns)
    return tables


class SQLValidator:
    """
    Validates SQL queries for safety and correctness.

    Example:
        validator = SQLValidator(tables_from_schema(slim_schema))
        result = validator.validate(sql)
        if not result.is_valid:
            print(f"Invalid: {result.errors}")
    """

    DANGEROUS_PATTERNS = {
        'delete': re.compile(r'\bDELETE\s+FROM\b', re.IGNORECASE),
        'update': re.compile(r'\bUPDATE\s+\w+\s+SET\b', re.IGNORECASE),
        'drop': re.compile(r'\bDROP\s+(?:TABLE|DATABASE|INDEX|VIEW|SCHEMA)\b', re.IGNORECASE),
        'insert': re.compile(r'\bINSERT\s+INTO\b', re.IGNORECASE),
        'truncate': re.compile(r'\bTRUNCATE\b', re.IGNORECASE),
        'alter': re.compile(r'\bALTER\s+TABLE\b', re.IGNORECASE),
        'create': re.compile(r'\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP\w*\s+)?(?:TABLE|DATABASE|INDEX|VIEW|SCHEMA|MACRO)\b', re.IGNORECASE),
        'exec': re.compile(r'\b(?:EXEC|EXECUTE)\b', re.IGNORECASE),
        'attach': re.compile(r'\b(?:ATTACH|DETACH|COPY|PRAGMA|INSTALL|LOAD)\b', re.IGNORECASE),
        'info_schema': re.compile(r'\bINFORMATION_SCHEMA\b', re.IGNORECASE),
    }

    INJECTION_PATTERNS = {
        'comment': re.compile(r'(?:--|/\*)'),
        'union_attack': re.compile(r"'\s*UNION\s+(?:ALL\s+)?SELECT", re.IGNORECASE),
        'or_true': re.compile(r"'\s*OR\s+['\d]\s*=\s*['\d]", re.IGNORECASE),
        'stacked': re.compile(r';\s*\S'),
    }

    CTE_PATTERN = re.compile(r'(?:\bWITH(?:\s+RECURSIVE)?|,)\s*(\w+)\s+AS\s*\(', re.IGNORECASE)

    def __init__(self,
                 available_tables: Optional[Dict[str, List[str]]] = None,
                 config: Optional[ValidatorConfig] = None,
                 executor=None):
        """
        Initialize validator.

        Args:
            available_tables: Dict of table_name -> [columns]; empty skips table checks
            config: Validator configuration
            executor: Optional executor providing explain(sql) for syntax checks
        """
        self.config = config or ValidatorConfig()
        self.available_tables = {
            t.upper(): [c.upper() for c in cols]
            for t, cols in (available_tables or {}).items()
        }
        self.executor = executor

    def validate(self, sql: str) -> ValidationResult:
        """
        Validate SQL query.

        Args:
            sql: SQL query to validate

        Returns:
            ValidationResult with status and details
        """
        errors = []
        warnings = []
        dangerous_found = []

        if not sql or not sql.strip():
            return ValidationResult(
                is_valid=False,
                validated_sql="",
                errors=["Empty SQL query"]
            )

        sql = sql.strip().rstrip(';').strip()

        dangerous = self._check_dangerous_operations(sql)
        if dangerous:
            dangerous_found.extend(dangerous)
            errors.append(f"Dangerous operations blocked: {', '.join(dangerous)}")

        injections = self._check_injection_patterns(sql)
        if injections:
            dangerous_found.extend(injections)
            errors.append(f"SQL injection patterns detected: {', '.join(injections)}")

        if not self._is_select_query(sql):
            errors.append("Only SELECT queries are allowed")

        join_count = self._count_joins(sql)
        if join_count > self.config.max_joins:
            warnings.append(f"Query has {join_count} joins (max recommended: {self.config.max_joins})")

        tables_verified = []
        if self.available_tables:
            ctes = {name.upper() for name in self.CTE_PATTERN.findall(sql)}
            for table in self._extract_tables(sql):
                if table.upper() in ctes:
                    continue
                if table.upper() in self.available_tables:
                    tables_verified.append(table)
                else:
                    errors.append(f"Table not found: {table}")

        if not errors and self.executor is not None and self.config.explain_check:
            ok, explain_error = self.executor.explain(sql)
            if not ok:
                errors.append(f"Syntax check failed: {explain_error}")

        if errors:
            logger.warning(f"SQL validation failed: {'; '.join(errors)}")

        return ValidationResult(
            is_valid=len(errors) == 0,
            validated_sql=sql if len(errors) == 0 else "",
            errors=errors,
            warnings=warnings,
            tables_verified=sorted(tables_verified),
            dangerous_patterns_found=dangerous_found
        )

    def _check_dangerous_operations(self, sql: str) -> List[str]:
        """Check for dangerous SQL operations."""
        found = []

        checks = {
            'delete': self.config.block_delete,
            'update': self.config.block_update,
            'drop': self.config.block_drop,
            'insert': self.config.block_insert,
            'truncate': self.config.block_truncate,
            'alter': self.config.block_alter,
            'create': self.config.block_create,
            'exec': True,
            'attach': True,
            'info_schema': self.config.block_info_schema,
        }

        for name, should_block in checks.items():
            if should_block and self.DANGEROUS_PATTERNS[name].search(sql):
                found.append(name.upper())

        return found

    def _check_injection_patterns(self, sql: str) -> List[str]:
        """Check for SQL injection patterns (outside string literals)."""
        stripped = re.sub(r"'(?:[^']|'')*'", "''", sql)
        found = []
        for name, pattern in self.INJECTION_PATTERNS.items():
            target = sql if name in ('union_attack', 'or_true') else stripped
            if pattern.search(target):
                found.append(f"injection:{name}")
        return found

    def _is_select_query(self, sql: str) -> bool:
        """SELECT, or a WITH clause leading into SELECT."""
        upper = sql.lstrip('( \n\t').upper()
        return upper.startswith('SELECT') or upper.startswith('WITH')

    def _count_joins(self, sql: str) -> int:
        return len(re.findall(r'\bJOIN\b', sql, re.IGNORECASE))

    def _extract_tables(self, sql: str) -> List[str]:
        """Extract table names from FROM and JOIN clauses."""
        # EXTRACT(YEAR FROM col), TRIM(x FROM y), IS DISTINCT FROM are not table references
        sql = re.sub(r'\b(?:EXTRACT|SUBSTRING|TRIM|POSITION|OVERLAY)\s*\([^()]*\)', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bDISTINCT\s+FROM\b', '', sql, flags=re.IGNORECASE)
        tables = re.findall(r'\bFROM\s+"?(\w+)"?', sql, re.IGNORECASE)
        tables.extend(re.findall(r'\bJOIN\s+"?(\w+)"?', sql, re.IGNORECASE))
        return list(dict.fromkeys(tables))

    def quick_validate(self, sql: str) -> Tuple[bool, List[str]]:
        """Validity and errors only."""
        result = self.validate(sql)
        return result.is_valid, result.errors
