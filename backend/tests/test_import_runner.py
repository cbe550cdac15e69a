import csv
import io
import json

import pytest
from sqlalchemy import select

from product_importer.core.errors import CatalogWriteError
from product_importer.db.models.product import Product
from product_importer.services.catalog import SqlCatalogService
from product_importer.services.job_stats import PHASE_ORDER
from product_importer.services.product_payload import build_product_payload
from product_importer.services.row_schema import validate_row

THREE_ROWS = (
    b"title,handle,sku,currency_code,retail_price,min_increment,min_cut\n"
    b"Linen Natural,linen-natural,LIN-001,usd,24.50,0.25,1\n"
    b",missing-title,LIN-002,usd,10,,\n"
    b"Cotton Blue,cotton-blue,COT-001,usd,12,0.3,1\n"
)


def _read_csv(storage, url):
    return list(csv.DictReader(io.StringIO(storage.read(url).decode("utf-8"))))


def _seed_product(session, handle, skus, status="published"):
    catalog = SqlCatalogService(session)
    product = catalog.create_product(
        {**build_product_payload(validate_row({"title": handle.title(), "handle": handle, "sku": skus[0]}, 1).row), "status": status}
    )
    for sku in skus[1:]:
        catalog.update_product(
            product.id,
            build_product_payload(validate_row({"title": handle.title(), "handle": handle, "sku": sku}, 1).row),
            unarchive=status != "archived",
        )
    return product


def test_three_row_execute(session, storage, catalog, jobs, submit, make_runner):
    job = submit(THREE_ROWS, mode="execute")
    assert make_runner().run(job.id) == "completed"

    job = jobs.get(job.id)
    assert job.status == "completed"
    assert job.phase == "completed"
    assert job.rows_total == 3
    assert job.rows_processed == 3
    assert job.rows_valid == 1
    assert job.rows_invalid == 2
    assert job.created_count == 1
    assert job.completed_at is not None
    assert catalog.calls == [("create", "linen-natural")]

    error_rows = _read_csv(storage, job.artifacts["error_rows"])
    assert [row["row_index"] for row in error_rows] == ["2", "3"]
    assert error_rows[0]["error_fields"] == "title"
    assert error_rows[1]["error_fields"] == "min_cut"

    results = _read_csv(storage, job.artifacts["result_rows"])
    assert [(row["row_index"], row["status"]) for row in results] == [
        ("1", "created"),
        ("2", "invalid"),
        ("3", "invalid"),
    ]
    product = session.scalar(select(Product).where(Product.handle == "linen-natural"))
    assert product.prices == [{"amount": 2450, "currency_code": "usd"}]
    assert product.meta["inventory"] == {"min_increment": 0.25, "min_cut": 1.0}


def test_dry_run_makes_no_mutations(session, storage, catalog, jobs, submit, make_runner, settings):
    existing = _seed_product(session, "linen-natural", ["LIN-001", "LIN-OLD"])
    settings = settings.model_copy(update={"import_enable_pruning": True})
    job = submit(
        THREE_ROWS,
        settings_override=settings,
        confirm_header="yes",
        mode="dry_run",
        upsert="handle",
        force_prune_missing_variants="true",
        prune_confirm_token="PRUNE_VARIANTS",
    )
    assert make_runner(settings=settings).run(job.id) == "completed"

    assert catalog.calls == []
    job = jobs.get(job.id)
    assert job.created_count == job.updated_count == job.pruned_count == 0
    assert set(job.artifacts) >= {"validation_report", "prune_preview", "result_rows", "error_rows"}

    preview = json.loads(storage.read(job.artifacts["prune_preview"]))
    assert preview["executed"] is False
    assert [(entry["product_id"], entry["sku"]) for entry in preview["variants"]] == [(existing.id, "LIN-OLD")]

    report = json.loads(storage.read(job.artifacts["validation_report"]))
    assert report["summary"]["valid_rows"] == 1
    assert report["summary"]["invalid_rows"] == 2
    assert report["configuration"]["dry_run"] is True

    results = _read_csv(storage, job.artifacts["result_rows"])
    assert (results[0]["status"], results[0]["action"]) == ("validated", "update")
    assert "prune_confirm_token" not in job.options


def test_execute_prunes_missing_variants(session, storage, catalog, jobs, submit, make_runner, settings):
    existing = _seed_product(session, "linen-natural", ["LIN-001", "LIN-OLD"])
    settings = settings.model_copy(update={"import_enable_pruning": True})
    job = submit(
        b"title,handle,sku\nLinen Natural,linen-natural,lin-001\nNew Wool,new-wool,WOOL-1\n",
        settings_override=settings,
        confirm_header="yes",
        mode="execute",
        upsert="handle",
        force_prune_missing_variants="true",
        prune_confirm_token="PRUNE_VARIANTS",
    )
    assert make_runner(settings=settings).run(job.id) == "completed"

    job = jobs.get(job.id)
    assert job.updated_count == 1
    assert job.created_count == 1
    assert job.pruned_count == 1
    assert [call[0] for call in catalog.calls] == ["update", "create", "delete_variants"]
    assert [variant.sku for variant in catalog.list_variants(existing.id)] == ["LIN-001"]
    preview = json.loads(storage.read(job.artifacts["prune_preview"]))
    assert preview["executed"] is True


def test_builtin_fabric_profile_maps_price_per_yard(session, jobs, submit, make_runner):
    lookups = []

    def lookup(profile_id, owner_id):
        lookups.append(profile_id)
        return None

    job = submit(
        b"Product Name,Product Handle,SKU,Price per Yard,Currency\n"
        b"Velvet Rose,velvet-rose,VEL-1,18.50,USD\n",
        mode="execute",
        mapping_profile_id="builtin-fabric",
    )
    assert make_runner(profile_lookup=lookup).run(job.id) == "completed"

    assert lookups == []
    job = jobs.get(job.id)
    assert job.options["resolved_mapping"]["Price per Yard"] == "retail_price"
    product = session.scalar(select(Product).where(Product.handle == "velvet-rose"))
    assert product.prices == [{"amount": 1850, "currency_code": "usd"}]
    assert [variant.sku for variant in product.variants] == ["VEL-1"]


def test_progress_is_monotonic(jobs, submit, make_runner, progress):
    rows = b"".join(f"Product {n},p-{n}\n".encode() for n in range(1, 8))
    job = submit(b"title,handle\n" + rows)
    make_runner().run(job.id)

    assert progress.events
    fractions = [event["progress"] for event in progress.events]
    assert fractions == sorted(fractions)
    assert fractions[-1] == 1.0
    phases = [PHASE_ORDER.index(event["phase"]) for event in progress.events]
    assert phases == sorted(phases)
    assert jobs.get(job.id).phase == "completed"


def test_archived_match_is_skipped(session, jobs, catalog, submit, make_runner):
    _seed_product(session, "old-linen", ["OLD-1"], status="archived")
    job = submit(b"title,handle\nOld Linen,old-linen\n", mode="execute", upsert="handle")
    make_runner().run(job.id)

    job = jobs.get(job.id)
    assert job.rows_skipped == 1
    assert job.updated_count == 0
    assert catalog.calls == []


def test_row_level_catalog_failure_continues(session, storage, jobs, submit, make_runner):
    class RejectingCatalog(SqlCatalogService):
        def create_product(self, payload):
            if payload["handle"] == "clash":
                raise CatalogWriteError("Catalog rejected create")
            return super().create_product(payload)

    job = submit(
        b"title,handle,sku\nClash,clash,CLASH-1\nFine,fine,FINE-1\n",
        mode="execute",
    )
    assert make_runner(catalog=RejectingCatalog(session)).run(job.id) == "completed"

    job = jobs.get(job.id)
    assert job.failed_count == 1
    assert job.created_count == 1
    results = _read_csv(storage, job.artifacts["result_rows"])
    assert [row["status"] for row in results] == ["failed", "created"]


@pytest.mark.parametrize("mode", ["dry_run", "execute"])
def test_existing_handle_and_sku_are_invalid_without_upsert(session, storage, catalog, jobs, submit, make_runner, mode):
    _seed_product(session, "linen", ["LIN-1"])
    job = submit(
        b"title,handle,sku\nLinen,linen,LIN-NEW\nOther,other,lin-1\nWool,wool,WOOL-1\n",
        mode=mode,
    )
    assert make_runner().run(job.id) == "completed"

    job = jobs.get(job.id)
    assert job.rows_valid == 1
    assert job.rows_invalid == 2
    assert job.failed_count == 0
    assert catalog.calls == ([("create", "wool")] if mode == "execute" else [])

    error_rows = _read_csv(storage, job.artifacts["error_rows"])
    assert [(row["row_index"], row["error_fields"]) for row in error_rows] == [("1", "handle"), ("2", "sku")]
    assert "enable upsert" in error_rows[0]["error_messages"]
    results = _read_csv(storage, job.artifacts["result_rows"])
    assert [row["status"] for row in results][:2] == ["invalid", "invalid"]


@pytest.mark.parametrize("mode", ["dry_run", "execute"])
def test_repeated_handle_within_file_without_upsert(storage, jobs, submit, make_runner, mode):
    job = submit(b"title,handle,sku\nLinen,linen,LIN-1\nLinen again,linen,LIN-2\n", mode=mode)
    make_runner().run(job.id)

    job = jobs.get(job.id)
    assert (job.rows_valid, job.rows_invalid, job.failed_count) == (1, 1, 0)
    error_rows = _read_csv(storage, job.artifacts["error_rows"])
    assert [row["row_index"] for row in error_rows] == ["2"]


def test_update_cannot_take_another_products_sku(session, storage, jobs, submit, make_runner):
    _seed_product(session, "linen", ["LIN-1"])
    _seed_product(session, "wool", ["WOOL-1"])
    job = submit(b"title,handle,sku\nLinen,linen,WOOL-1\n", mode="execute", upsert="handle")
    make_runner().run(job.id)

    job = jobs.get(job.id)
    assert (job.rows_invalid, job.updated_count) == (1, 0)
    error_rows = _read_csv(storage, job.artifacts["error_rows"])
    assert error_rows[0]["error_fields"] == "sku"


def test_claim_is_single_owner(jobs, submit, make_runner):
    job = submit(b"title\nLinen\n")
    assert make_runner().run(job.id) == "completed"
    assert make_runner().run(job.id) is None


def test_cancel_before_claim(jobs, submit, make_runner):
    job = submit(b"title\nLinen\n")
    assert jobs.request_cancel(job.id).status == "canceled"
    assert make_runner().run(job.id) is None
    assert jobs.get(job.id).status == "canceled"


def test_cancel_mid_run_keeps_partial_results(session, storage, jobs, submit, make_runner, progress):
    job = submit(b"title\nA\nB\nC\nD\n")

    def cancel_after_first_row(job_id, fraction, message=None, **kwargs):
        progress(job_id, fraction, message, **kwargs)
        if kwargs.get("status") == "processing" and fraction > 0:
            jobs.update_fields(job_id, cancel_requested=True)

    assert make_runner(progress=cancel_after_first_row).run(job.id) == "canceled"
    job = jobs.get(job.id)
    assert job.status == "canceled"
    assert job.rows_processed == 1
    assert len(_read_csv(storage, job.artifacts["result_rows"])) == 1


def test_missing_source_file_fails_job(storage, jobs, submit, make_runner):
    job = submit(b"title\nLinen\n")
    storage.path_for(storage.key_from_url(job.source_file_url)).unlink()

    assert make_runner().run(job.id) == "failed"
    job = jobs.get(job.id)
    assert job.error["code"] == "file_not_found"
    assert job.completed_at is not None


def test_unknown_profile_fails_job(jobs, session, submit, make_runner, profiles):
    from product_importer.api.schemas.mapping_profile import MappingProfileCreate

    profile = profiles.create("user_1", MappingProfileCreate(name="Temp", mapping={"Name": "title"}))
    job = submit(b"Name\nLinen\n", mapping_profile_id=profile.id)
    session.delete(profile)
    session.commit()

    assert make_runner().run(job.id) == "failed"
    assert jobs.get(job.id).error["code"] == "mapping_profile_not_found"


def test_xlsx_source_gets_annotated_copy(storage, jobs, submit, make_runner):
    from openpyxl import Workbook

    workbook = Workbook()
    workbook.active.append(["title", "sku"])
    workbook.active.append(["Linen", "LIN-1"])
    buffer = io.BytesIO()
    workbook.save(buffer)

    job = submit(buffer.getvalue(), "products.xlsx")
    assert make_runner().run(job.id) == "completed"
    assert "annotated_xlsx" in jobs.get(job.id).artifacts
