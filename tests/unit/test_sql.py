"""
Unit tests for SQL generation: identifier safety, dialects, keyset paging
and the SQL Server merge plan.
"""

import pytest

from table_mirror.errors import ConfigurationError, DataShapeError
from table_mirror.mapping import TableMapping
from table_mirror.rows import Row, TableSchema
from table_mirror.sql import (
    build_merge_plan,
    identity_columns_query,
    keyset_params,
    keyset_predicate,
    page_query,
    point_lookup_query,
    resolve_target_columns,
    row_estimate_query,
    schema_probe_query,
)
from utils.database_types import DatabaseType
from utils.sql_safety import (
    quote_identifier,
    quote_qualified_name,
    validate_identifier,
    validate_integer_param,
)

PG = DatabaseType.POSTGRESQL
MSSQL = DatabaseType.SQLSERVER


# ============================================================================
# Identifier safety
# ============================================================================

class TestSqlSafety:
    """Test identifier validation and quoting"""

    @pytest.mark.parametrize("identifier", ["customers", "_tmp", "Order2", "A_b_C"])
    def test_valid_identifiers(self, identifier):
        assert validate_identifier(identifier) == identifier

    @pytest.mark.parametrize("identifier", [
        "", "1abc", "a b", "a;b", "a'--", "tabé", "a.b", "[a]",
    ])
    def test_invalid_identifiers(self, identifier):
        with pytest.raises(ValueError):
            validate_identifier(identifier)

    def test_quote_per_dialect(self):
        assert quote_identifier("id", "postgresql") == '"id"'
        assert quote_identifier("id", "sqlserver") == "[id]"

    def test_quote_qualified_name(self):
        assert quote_qualified_name("dbo", "t", "sqlserver") == "[dbo].[t]"
        assert quote_qualified_name(None, "t", "postgresql") == '"t"'

    def test_quote_rejects_injection(self):
        with pytest.raises(ValueError):
            quote_identifier("x]; DROP TABLE y; --", "sqlserver")

    def test_validate_integer_param(self):
        assert validate_integer_param(5, "limit", min_value=1) == 5
        with pytest.raises(ValueError):
            validate_integer_param(0, "limit", min_value=1)
        with pytest.raises(ValueError):
            validate_integer_param("5", "limit")
        with pytest.raises(ValueError):
            validate_integer_param(True, "limit")


class TestDatabaseType:
    """Test dialect helpers"""

    @pytest.mark.parametrize("alias,expected", [
        ("postgres", PG), ("PG", PG), ("postgresql", PG),
        ("mssql", MSSQL), (" SQLServer ", MSSQL), (MSSQL, MSSQL),
    ])
    def test_parse_aliases(self, alias, expected):
        assert DatabaseType.parse(alias) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unsupported"):
            DatabaseType.parse("oracle")

    def test_placeholders(self):
        assert PG.placeholder == "%s"
        assert MSSQL.placeholder == "?"

    def test_limited_select(self):
        assert MSSQL.limited_select("*", "FROM [t]", 10) == "SELECT TOP (10) * FROM [t]"
        assert PG.limited_select("*", 'FROM "t"', 10) == 'SELECT * FROM "t" LIMIT 10'

    def test_limited_select_rejects_negative(self):
        with pytest.raises(ValueError):
            MSSQL.limited_select("*", "FROM [t]", -1)


# ============================================================================
# Keyset paging
# ============================================================================

class TestKeyset:
    """Test keyset predicates and page queries"""

    def test_single_column_predicate(self):
        assert keyset_predicate(MSSQL, ["id"]) == "([id] > ?)"

    def test_composite_predicate(self):
        assert keyset_predicate(MSSQL, ["a", "b"]) == "([a] > ?) OR ([a] = ? AND [b] > ?)"
        assert keyset_predicate(PG, ["a", "b", "c"]) == (
            '("a" > %s) OR ("a" = %s AND "b" > %s) OR ("a" = %s AND "b" = %s AND "c" > %s)'
        )

    def test_params_match_placeholders(self):
        assert keyset_params((1,)) == [1]
        assert keyset_params((1, 2)) == [1, 1, 2]
        assert keyset_params((1, 2, 3)) == [1, 1, 2, 1, 2, 3]

    def test_first_page_sql_server(self):
        sql = page_query(MSSQL, "dbo", "Customer", ["id"], 500, after_key=False)
        assert sql == "SELECT TOP (500) * FROM [dbo].[Customer] ORDER BY [id] ASC"

    def test_next_page_postgres(self):
        sql = page_query(PG, "public", "orders", ["a", "b"], 100, after_key=True, columns=["a", "b"])
        assert sql == (
            'SELECT "a", "b" FROM "public"."orders" '
            'WHERE ("a" > %s) OR ("a" = %s AND "b" > %s) '
            'ORDER BY "a" ASC, "b" ASC LIMIT 100'
        )

    def test_invalid_column_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            page_query(MSSQL, "dbo", "t", ["id;--"], 10, after_key=False)

    def test_point_lookup(self):
        assert point_lookup_query(MSSQL, "dbo", "t", ["a", "b"]) == (
            "SELECT * FROM [dbo].[t] WHERE [a] = ? AND [b] = ?"
        )

    def test_schema_probe_returns_no_rows(self):
        assert schema_probe_query(MSSQL, "dbo", "t") == "SELECT TOP (0) * FROM [dbo].[t]"
        assert schema_probe_query(PG, "s", "t") == 'SELECT * FROM "s"."t" LIMIT 0'

    def test_row_estimate(self):
        sql, params = row_estimate_query(MSSQL, "dbo", "t")
        assert "sys.partitions" in sql
        assert params == ["[dbo].[t]"]
        sql, params = row_estimate_query(PG, "s", "t")
        assert sql == 'SELECT COUNT(*) FROM "s"."t"'
        assert params == []

    def test_identity_columns_query(self):
        sql, params = identity_columns_query("dbo", "t")
        assert "sys.identity_columns" in sql
        assert params == ["[dbo].[t]"]


# ============================================================================
# Merge plan
# ============================================================================

def _mapping(**kwargs):
    defaults = dict(
        source_schema="dbo", source_table="Customer",
        target_schema="bronze", target_table="Customer", primary_key=("Id",),
    )
    defaults.update(kwargs)
    return TableMapping(**defaults)


class TestMergePlan:
    """Test build_merge_plan"""

    def test_merge_statement(self):
        plan = build_merge_plan(
            _mapping(),
            TableSchema.from_names(["Id", "Name"]),
            TableSchema.from_names(["Id", "Name", "created_at", "updated_at"]),
        )

        assert plan.merge_sql == (
            "MERGE INTO [bronze].[Customer] WITH (HOLDLOCK) AS target\n"
            "USING (VALUES (?, ?)) AS source ([Id], [Name])\n"
            "ON target.[Id] = source.[Id]\n"
            "WHEN MATCHED THEN UPDATE SET target.[Name] = source.[Name], "
            "target.[updated_at] = SYSUTCDATETIME()\n"
            "WHEN NOT MATCHED THEN INSERT ([Id], [Name], [created_at]) "
            "VALUES (source.[Id], source.[Name], SYSUTCDATETIME());"
        )
        assert plan.delete_sql == "DELETE FROM [bronze].[Customer] WHERE [Id] = ?"
        assert plan.identity_insert is False
        assert plan.identity_on_sql is None

    def test_source_stamp_columns_are_mirrored(self):
        plan = build_merge_plan(
            _mapping(),
            TableSchema.from_names(["Id", "created_at"]),
            TableSchema.from_names(["Id", "created_at", "updated_at"]),
        )
        assert "INSERT ([Id], [created_at]) VALUES (source.[Id], source.[created_at])" in plan.merge_sql
        assert "target.[created_at] = source.[created_at]" in plan.merge_sql

    def test_stamps_skipped_when_target_lacks_them(self):
        plan = build_merge_plan(
            _mapping(),
            TableSchema.from_names(["Id", "Name"]),
            TableSchema.from_names(["Id", "Name"]),
        )
        assert "SYSUTCDATETIME" not in plan.merge_sql

    def test_key_only_table_has_no_update_branch(self):
        plan = build_merge_plan(
            _mapping(created_column=None, modified_column=None),
            TableSchema.from_names(["Id"]),
            TableSchema.from_names(["Id"]),
        )
        assert "WHEN MATCHED" not in plan.merge_sql
        assert "WHEN NOT MATCHED THEN INSERT ([Id])" in plan.merge_sql

    def test_composite_key(self):
        plan = build_merge_plan(
            _mapping(primary_key=("OrderId", "LineNo")),
            TableSchema.from_names(["OrderId", "LineNo", "Qty"]),
            TableSchema.from_names(["OrderId", "LineNo", "Qty"]),
        )
        assert "ON target.[OrderId] = source.[OrderId] AND target.[LineNo] = source.[LineNo]" in plan.merge_sql
        assert plan.delete_sql.endswith("WHERE [OrderId] = ? AND [LineNo] = ?")
        assert plan.key_columns == ("OrderId", "LineNo")

    def test_identity_column(self):
        plan = build_merge_plan(
            _mapping(),
            TableSchema.from_names(["Id", "Name"]),
            TableSchema.from_names(["Id", "Name"]),
            identity_columns=["id"],
        )
        assert plan.identity_insert is True
        assert plan.identity_on_sql == "SET IDENTITY_INSERT [bronze].[Customer] ON"
        assert plan.identity_off_sql == "SET IDENTITY_INSERT [bronze].[Customer] OFF"

    def test_identity_column_never_updated(self):
        plan = build_merge_plan(
            _mapping(primary_key=("Code",)),
            TableSchema.from_names(["Code", "Seq", "Name"]),
            TableSchema.from_names(["Code", "Seq", "Name"]),
            identity_columns=["Seq"],
        )
        assert "target.[Seq] = source.[Seq]" not in plan.merge_sql
        assert "target.[Name] = source.[Name]" in plan.merge_sql

    def test_target_spelling_used(self):
        plan = build_merge_plan(
            _mapping(primary_key=("id",)),
            TableSchema.from_names(["id", "name"]),
            TableSchema.from_names(["ID", "NAME"]),
        )
        assert plan.source_columns == ("id", "name")
        assert plan.target_columns == ("ID", "NAME")
        assert "[ID]" in plan.merge_sql

    def test_source_column_missing_on_target(self):
        with pytest.raises(DataShapeError, match="Email"):
            build_merge_plan(
                _mapping(),
                TableSchema.from_names(["Id", "Email"]),
                TableSchema.from_names(["Id"]),
            )

    def test_extra_target_columns_warn(self, caplog):
        build_merge_plan(
            _mapping(),
            TableSchema.from_names(["Id"]),
            TableSchema.from_names(["Id", "Notes"]),
        )
        assert "Notes" in caplog.text

    def test_parameters_in_source_order(self):
        plan = build_merge_plan(
            _mapping(),
            TableSchema.from_names(["Id", "Name"]),
            TableSchema.from_names(["Name", "Id"]),
        )
        row = Row(TableSchema.from_names(["Id", "Name"]), [7, "Ada"])
        assert plan.parameters(row) == (7, "Ada")

    def test_parameters_missing_column(self):
        plan = build_merge_plan(
            _mapping(), TableSchema.from_names(["Id", "Name"]), TableSchema.from_names(["Id", "Name"])
        )
        with pytest.raises(DataShapeError):
            plan.parameters(Row.from_dict({"Id": 1}))


def test_resolve_target_columns_is_case_insensitive():
    assert resolve_target_columns(
        TableSchema.from_names(["a", "B"]), TableSchema.from_names(["A", "b"]), "t"
    ) == ["A", "b"]
