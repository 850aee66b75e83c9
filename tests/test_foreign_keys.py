import logging

from fakes import FakeConnection, FakeDialect, make_fk
from pg_transfer.foreign_keys import ForeignKey, ForeignKeyGuard, PostgresForeignKeyDialect


def test_disable_twice_leaves_the_same_state_as_once():
    dialect = FakeDialect([make_fk("fk_orders_customer"), make_fk("fk_lines_order", table="order_lines")])
    guard = ForeignKeyGuard(dialect)

    first = guard.suspend(None, "orders_archive")
    state_after_first = set(dialect.enabled)
    second = guard.suspend(None, "orders_archive")

    assert [fk.name for fk in first.constraints] == ["fk_lines_order", "fk_orders_customer"]
    assert second.constraints == []
    assert dialect.enabled == state_after_first == set()


def test_enable_after_enable_validates_each_constraint_once():
    dialect = FakeDialect([make_fk("fk_orders_customer"), make_fk("fk_orders_region")])
    guard = ForeignKeyGuard(dialect)
    suspension = guard.suspend(None, "orders_archive")

    assert guard.resume(None, suspension) is True
    assert guard.resume(None, suspension) is True
    assert dialect.validations == {"fk_orders_customer": 1, "fk_orders_region": 1}
    assert dialect.enabled == {"fk_orders_customer", "fk_orders_region"}


def test_failed_disable_is_not_fatal(caplog):
    guard = ForeignKeyGuard(FakeDialect([make_fk("fk_a")], fail_disable=True))

    with caplog.at_level(logging.ERROR):
        assert guard.suspend(None, "orders_archive") is None
    assert "Error disabling foreign key constraints" in caplog.text


def test_failed_enable_is_reported_loudly(caplog):
    dialect = FakeDialect([make_fk("fk_a")])
    guard = ForeignKeyGuard(dialect)
    suspension = guard.suspend(None, "orders_archive")
    dialect.fail_enable = True

    with caplog.at_level(logging.CRITICAL):
        assert guard.resume(None, suspension) is False
    assert any(r.levelno == logging.CRITICAL and "NOT RESTORED" in r.getMessage() for r in caplog.records)


RESTORE_DDL = ('ALTER TABLE "public"."orders_archive" ADD CONSTRAINT "fk_a" '
               "FOREIGN KEY (customer_id) REFERENCES public.customers(id);")


def test_dropped_definitions_are_logged_before_the_drop(caplog):
    dialect = FakeDialect([make_fk("fk_a")], fail_disable=True)
    guard = ForeignKeyGuard(dialect)

    with caplog.at_level(logging.WARNING):
        guard.suspend(None, "orders_archive")

    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any(RESTORE_DDL in m for m in warnings)


def test_unrestored_definitions_are_logged_critically(caplog):
    dialect = FakeDialect([make_fk("fk_a")])
    guard = ForeignKeyGuard(dialect)
    suspension = guard.suspend(None, "orders_archive")
    dialect.fail_enable = True

    with caplog.at_level(logging.CRITICAL):
        guard.resume(None, suspension)

    critical = [r.getMessage() for r in caplog.records if r.levelno == logging.CRITICAL]
    assert any(RESTORE_DDL in m for m in critical)


def test_postgres_disable_is_one_batched_statement():
    dialect = PostgresForeignKeyDialect()
    fks = [make_fk("fk_a"), ForeignKey("sales", "order_lines", "fk_b", "FOREIGN KEY (order_id) REFERENCES public.orders_archive(id)")]
    conn = FakeConnection("management", autocommit=True)

    dialect.disable(conn, fks)

    assert len(conn.executed) == 1
    assert conn.executed[0] == (
        'ALTER TABLE "public"."orders_archive" DROP CONSTRAINT IF EXISTS "fk_a";\n'
        'ALTER TABLE "sales"."order_lines" DROP CONSTRAINT IF EXISTS "fk_b";'
    )


def test_postgres_enable_readds_only_missing_constraints_in_one_block():
    dialect = PostgresForeignKeyDialect()
    conn = FakeConnection("management", autocommit=True)

    dialect.enable(conn, [make_fk("fk_a"), make_fk("fk_b")])

    assert len(conn.executed) == 1
    sql = conn.executed[0]
    assert sql.startswith("DO $fk$") and sql.rstrip().endswith("$fk$;")
    assert sql.count("IF NOT EXISTS") == 2
    assert ('ALTER TABLE "public"."orders_archive" ADD CONSTRAINT "fk_a" '
            "FOREIGN KEY (customer_id) REFERENCES public.customers(id);") in sql
    assert "conrelid = '\"public\".\"orders_archive\"'::regclass" in sql


def test_postgres_dialect_skips_empty_constraint_sets():
    dialect = PostgresForeignKeyDialect()
    conn = FakeConnection("management", autocommit=True)

    dialect.disable(conn, [])
    dialect.enable(conn, [])

    assert conn.executed == []
