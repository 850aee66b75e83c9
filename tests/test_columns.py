import pytest

from fakes import make_job
from pg_transfer.columns import (
    ColumnMapping,
    build_insert_sql,
    build_source_query,
    plan_for_job,
    qualified_table,
    resolve_columns,
)
from pg_transfer.errors import ColumnMappingError, TransferDefinitionError
from pg_transfer.ImportJob import ColumnSpec


def test_constant_and_source_column_share_the_ordinal_sequence():
    job = make_job(from_column_list="A,B", to_column_list="X,Y", mapped_column_list=",const1")
    plan = plan_for_job(job)

    assert plan.projection == "\"A\" AS \"X\", 'const1' AS \"Y\""
    assert [(m.ordinal, m.dest_column) for m in plan.mappings] == [(0, "X"), (1, "Y")]
    assert plan.mappings[0].source_column == "A"
    assert plan.mappings[1].source_column is None


def test_lists_are_trimmed_and_ignore_sentinel_dropped_before_alignment():
    job = make_job(
        from_column_list=" id , <-Ignore-> , name , email ",
        to_column_list="customer_id, full_name, contact",
    )
    specs = job.column_specs()

    assert [(s.source_column, s.dest_column) for s in specs] == [
        ("id", "customer_id"), ("name", "full_name"), ("email", "contact"),
    ]


def test_pairs_beyond_the_shorter_list_are_dropped():
    job = make_job(from_column_list="a,b,c", to_column_list="x,y")
    plan = plan_for_job(job)

    assert plan.dest_columns == ["x", "y"]


def test_single_quotes_in_constants_are_doubled():
    plan = resolve_columns([ColumnSpec(dest_column="note", constant_value="O'Brien's")])

    assert plan.projection == "'O''Brien''s' AS \"note\""


def test_identifiers_are_escaped():
    plan = resolve_columns([ColumnSpec(dest_column='we"ird', source_column="Order Date")])

    assert plan.projection == '"Order Date" AS "we""ird"'


@pytest.mark.parametrize("src, dst", [("", "x,y"), ("a,b", ""), ("<-Ignore->", "x"), (" , ", "x")])
def test_empty_lists_fail_before_any_io(src, dst):
    with pytest.raises(ColumnMappingError):
        plan_for_job(make_job(from_column_list=src, to_column_list=dst))


def test_missing_destination_table_is_a_definition_error():
    with pytest.raises(TransferDefinitionError):
        plan_for_job(make_job(to_table=" "))


def test_source_query_from_table_and_from_adhoc_query():
    plan = plan_for_job(make_job())

    assert build_source_query(make_job(from_table="sales.Orders"), plan) == (
        'SELECT "a" AS "x", "b" AS "y" FROM "sales"."Orders"'
    )
    assert build_source_query(make_job(query="SELECT * FROM orders WHERE paid;"), plan) == (
        'SELECT "a" AS "x", "b" AS "y" FROM (SELECT * FROM orders WHERE paid) AS query_result'
    )


def test_source_query_needs_a_table_or_a_query():
    plan = plan_for_job(make_job())
    with pytest.raises(TransferDefinitionError):
        build_source_query(make_job(from_table="", query=""), plan)


def test_insert_sql_targets_mapped_destination_columns():
    plan = plan_for_job(make_job(mapped_column_list="fixed"))

    assert build_insert_sql("public.orders_archive", plan) == (
        'INSERT INTO "public"."orders_archive" ("x", "y") VALUES %s'
    )


def test_prequoted_table_names_are_kept():
    assert qualified_table('"Sales"."Order Lines"') == '"Sales"."Order Lines"'


def test_mapping_str_names_source_or_ordinal():
    assert str(ColumnMapping(0, "x", "a")) == "a -> x"
    assert str(ColumnMapping(3, "y")) == "#3 -> y"
