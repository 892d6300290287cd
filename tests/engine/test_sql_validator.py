# Tests for SQL Validator
"""
Test Suite for SQL Validator
============================
Tests SQL validation including:
- Read-only enforcement
- Dangerous operation and injection pattern blocking
- Table verification against the selected schema
- EXPLAIN dry runs
"""

from hybridsql.engine.sql_validator import SQLValidator, ValidatorConfig, tables_from_schema


class TestBasicValidation:
    """Test basic SQL validation."""

    def setup_method(self):
        self.validator = SQLValidator(
            available_tables={
                'companies': ['id', 'name', 'country'],
                'orders': ['id', 'company_id', 'amount']
            },
            config=ValidatorConfig()
        )

    def test_valid_select_query(self):
        """Test valid SELECT query passes."""
        result = self.validator.validate("SELECT name FROM companies WHERE country = 'NO'")
        assert result.is_valid is True
        assert result.tables_verified == ['companies']

    def test_trailing_semicolon_stripped(self):
        """Test a trailing semicolon is stripped."""
        result = self.validator.validate("SELECT id FROM orders;")
        assert result.is_valid is True
        assert result.validated_sql == "SELECT id FROM orders"

    def test_empty_query(self):
        """Test empty query fails."""
        result = self.validator.validate("   ")
        assert result.is_valid is False
        assert "Empty SQL query" in result.errors[0]

    def test_non_select_query_blocked(self):
        """Test non-SELECT queries are blocked."""
        result = self.validator.validate("SHOW TABLES")
        assert result.is_valid is False
        assert "Only SELECT queries are allowed" in result.errors

    def test_table_case_insensitive(self):
        """Test table names match case-insensitively."""
        assert self.validator.validate("SELECT * FROM COMPANIES").is_valid

    def test_unknown_table(self):
        """Test unknown tables are reported."""
        result = self.validator.validate("SELECT * FROM invoices")
        assert result.is_valid is False
        assert "Table not found: invoices" in result.errors
        assert result.validated_sql == ""

    def test_cte_names_are_not_tables(self):
        """Test CTE names are not checked as tables."""
        sql = (
            "WITH big AS (SELECT company_id FROM orders WHERE amount > 1000) "
            "SELECT c.name FROM companies c JOIN big b ON b.company_id = c.id"
        )
        result = self.validator.validate(sql)
        assert result.is_valid is True
        assert result.tables_verified == ['companies', 'orders']

    def test_extract_from_is_not_a_table(self):
        """Test EXTRACT(... FROM col) is not read as a table."""
        result = self.validator.validate("SELECT EXTRACT(YEAR FROM created_at) FROM orders")
        assert result.is_valid is True

    def test_no_tables_skips_table_check(self):
        """Test the table check is skipped without a table list."""
        assert SQLValidator().validate("SELECT * FROM anything").is_valid


class TestDangerousOperations:
    """Test dangerous operation blocking."""

    def setup_method(self):
        self.validator = SQLValidator(config=ValidatorConfig())

    def test_delete_blocked(self):
        """Test DELETE is blocked."""
        result = self.validator.validate("DELETE FROM orders WHERE 1=1")
        assert result.is_valid is False
        assert "DELETE" in result.errors[0]

    def test_update_blocked(self):
        """Test UPDATE is blocked."""
        result = self.validator.validate("UPDATE orders SET amount = 0")
        assert "UPDATE" in result.dangerous_patterns_found

    def test_drop_blocked(self):
        """Test DROP is blocked."""
        assert "DROP" in self.validator.validate("DROP TABLE orders").dangerous_patterns_found

    def test_create_table_as_blocked(self):
        """Test CREATE TABLE AS is blocked."""
        result = self.validator.validate("CREATE TABLE copy AS SELECT * FROM orders")
        assert "CREATE" in result.dangerous_patterns_found

    def test_attach_blocked(self):
        """Test ATTACH is blocked."""
        result = self.validator.validate("ATTACH 'other.duckdb' AS other")
        assert "ATTACH" in result.dangerous_patterns_found

    def test_information_schema_blocked(self):
        """Test information_schema access is blocked by default."""
        result = self.validator.validate("SELECT * FROM information_schema.tables")
        assert result.is_valid is False
        assert "INFO_SCHEMA" in result.dangerous_patterns_found

    def test_information_schema_allowed_when_configured(self):
        """Test information_schema can be allowed by config."""
        validator = SQLValidator(config=ValidatorConfig(block_info_schema=False))
        assert validator.validate("SELECT * FROM information_schema.tables").is_valid

    def test_delete_inside_select_text_is_fine(self):
        """Test keywords inside string literals are ignored."""
        result = self.validator.validate("SELECT 'deleted' AS status FROM orders")
        assert result.is_valid is True


class TestInjectionPatterns:
    """Test SQL injection pattern detection."""

    def setup_method(self):
        self.validator = SQLValidator()

    def test_stacked_statement(self):
        """Test stacked statements are blocked."""
        result = self.validator.validate("SELECT 1; DROP TABLE orders")
        assert "injection:stacked" in result.dangerous_patterns_found
        assert "DROP" in result.dangerous_patterns_found

    def test_comment(self):
        """Test a trailing SQL comment is flagged."""
        result = self.validator.validate("SELECT * FROM orders -- WHERE id = 1")
        assert "injection:comment" in result.dangerous_patterns_found

    def test_comment_marker_inside_literal_allowed(self):
        """Test comment markers inside literals are allowed."""
        result = self.validator.validate("SELECT * FROM companies WHERE name LIKE '%--%'")
        assert result.is_valid is True

    def test_union_attack(self):
        """Test UNION SELECT injection is blocked."""
        result = self.validator.validate("SELECT * FROM companies WHERE name = '' UNION SELECT secret FROM keys")
        assert "injection:union_attack" in result.dangerous_patterns_found

    def test_or_true(self):
        """Test OR 1=1 injection is blocked."""
        result = self.validator.validate("SELECT * FROM companies WHERE name = '' OR 1=1")
        assert "injection:or_true" in result.dangerous_patterns_found


class TestComplexity:

    def test_many_joins_warn(self):
        """Test many joins give a warning, not an error."""
        validator = SQLValidator(config=ValidatorConfig(max_joins=1))
        result = validator.validate(
            "SELECT * FROM a JOIN b ON a.id = b.id JOIN c ON b.id = c.id"
        )
        assert result.is_valid is True
        assert "2 joins" in result.warnings[0]


class TestExplainCheck:
    """Dry runs through a real DuckDB executor."""

    def test_explain_passes(self, sql_executor, sample_schema):
        """Test EXPLAIN accepts valid SQL."""
        validator = SQLValidator(tables_from_schema(sample_schema), executor=sql_executor)
        assert validator.validate("SELECT name FROM companies").is_valid

    def test_explain_catches_bad_column(self, sql_executor, sample_schema):
        """Test EXPLAIN catches an unknown column."""
        validator = SQLValidator(tables_from_schema(sample_schema), executor=sql_executor)
        result = validator.validate("SELECT nme FROM companies")
        assert result.is_valid is False
        assert result.errors[0].startswith("Syntax check failed")

    def test_explain_disabled(self, sql_executor):
        """Test EXPLAIN is skipped when disabled."""
        validator = SQLValidator(executor=sql_executor, config=ValidatorConfig(explain_check=False))
        assert validator.validate("SELECT nme FROM companies").is_valid


class TestTablesFromSchema:

    def test_dict_and_list_columns(self, sample_schema):
        """Test tables are read from both column shapes."""
        tables = tables_from_schema(sample_schema)
        assert tables['orders'] == ['id', 'company_id', 'amount', 'created_at']
        assert tables['reviews'] == ['id', 'company_id', 'body']
