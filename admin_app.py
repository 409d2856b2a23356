"""
ProductSheetPro - Admin Console (Back-Office)
Used by office staff to import vendor PDFs into the catalog, build product
selection sheets from customer quotes, and maintain the product database.

Run: python admin_app.py
"""

import os
import json
import logging
import tempfile
from datetime import date
from pathlib import Path

import gradio as gr
import pandas as pd
from dotenv import load_dotenv
from pydantic import ValidationError

from models import (
    CATEGORY_PREFIX, CATCH_ALL_CATEGORY, CatalogProduct, ImportRow,
    SelectionHeader, SelectionItem,
)
from profiles import PROFILES, get_profile
from storage.product_db import ProductDB
from ingest import IngestionPipeline
from tools.code_allocator import AllocationConflict, ImportInterrupted
from tools.lookup_tools import CatalogLookupFailure
from tools.parse_tools import MAX_PDF_SIZE_MB, ExtractionError, normalize_price

load_dotenv(override=True)

logger = logging.getLogger(__name__)

# ── Configuration from environment ───────────────────────────────────
# Auth: set ADMIN_USERNAME and ADMIN_PASSWORD in .env to enable authentication
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
MAX_UPLOAD_SIZE_BYTES = MAX_PDF_SIZE_MB * 1024 * 1024
PDF_MAGIC = b"%PDF"

# ── Initialise storage ────────────────────────────────────────────────

db = ProductDB()
pipeline = IngestionPipeline(db)

CATEGORIES = list(CATEGORY_PREFIX)
AUTO_PROFILE = "Auto-detect"

# Input length limits
MAX_SEARCH_LEN = 200
MAX_HEADER_FIELD_LEN = 200

REVIEW_COLUMNS = [
    "Vendor Code", "Category", "Description", "Price", "Notes", "Image URL",
]
SELECTION_COLUMNS = [
    "Code", "Description", "Price", "Area", "Quantity", "Notes",
]


def _validate_pdf(file_path: str) -> str | None:
    """Validate that a file is a real PDF and within size limits.
    Returns an error message string, or None if valid."""
    path = Path(file_path)
    if not path.exists():
        return f"File not found: {path.name}"
    size = path.stat().st_size
    if size > MAX_UPLOAD_SIZE_BYTES:
        return f"{path.name} is too large ({size / 1024 / 1024:.1f}MB, max {MAX_PDF_SIZE_MB}MB)"
    if size == 0:
        return f"{path.name} is empty"
    try:
        with open(file_path, "rb") as f:
            header = f.read(1024)
    except OSError:
        return f"{path.name} could not be read"
    if PDF_MAGIC not in header:
        return f"{path.name} is not a valid PDF file"
    return None


def _sanitize_error(e: Exception) -> str:
    """Return a safe error message without leaking internals."""
    if isinstance(e, ExtractionError):
        return e.reason
    error_str = str(e)
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."
    return error_str


def _read_upload(file) -> tuple[bytes | None, str]:
    """Bytes and display name of a gr.File upload, or (None, error message)."""
    if file is None:
        return None, "Please upload a PDF file."
    file_path = file if isinstance(file, str) else str(file)
    error = _validate_pdf(file_path)
    if error:
        return None, error
    return Path(file_path).read_bytes(), Path(file_path).name


def _cell(value) -> str:
    """Dataframe cells come back as str, float NaN or None after editing."""
    if value is None or (isinstance(value, float) and value != value):
        return ""
    return str(value).strip()


def _resolve_profile(profile_name: str):
    if not profile_name or profile_name == AUTO_PROFILE:
        return None
    return get_profile(profile_name)


# ── BWA Import Tab ────────────────────────────────────────────────────

def process_bwa_upload(file, profile_name, category, pending_state):
    """Extract product records from a vendor PDF for review before import.
    The review table is editable; confirmation reads the edited table."""
    pdf_bytes, name = _read_upload(file)
    if pdf_bytes is None:
        return name, None, pending_state

    try:
        result = pipeline.extract(pdf_bytes, profile=_resolve_profile(profile_name))
    except ExtractionError as e:
        logger.warning(f"Rejected upload {name}: {e.reason}")
        return f"{name}: {e.reason}", None, pending_state
    except Exception as e:
        logger.error(f"Error processing {name}: {e}", exc_info=True)
        return f"{name}: ERROR - {_sanitize_error(e)}", None, pending_state

    if result.page_count == 0:
        return (
            f"{name}: no extractable text. The PDF may be scanned or encrypted.",
            None, pending_state,
        )
    if not result.records:
        status = f"{name}: no products found in {result.page_count} page(s)."
        if result.unresolved_codes:
            status += f"\nCodes seen without price or description: {', '.join(result.unresolved_codes)}"
        return status, None, pending_state

    rows = pipeline.build_import_rows(result.records, category or CATCH_ALL_CATEGORY)
    pending_state = {
        "filename": name,
        "records": [r.model_dump() for r in result.records],
    }
    df = _rows_to_review_df(rows)

    status = (
        f"Extracted {len(result.records)} products from {result.page_count} page(s) "
        f"of {name} (profile: {result.profile_name})."
    )
    if result.ambiguities:
        status += "\nNeeds checking:\n" + "\n".join(
            f"  {a.code} (page {a.page_number}): {a.reason}" for a in result.ambiguities
        )
    status += "\n\nReview the rows below and click 'Import to Catalog' to assign codes."
    return status, df, pending_state


def _rows_to_review_df(rows: list[ImportRow]) -> pd.DataFrame:
    return pd.DataFrame([{
        "Vendor Code": row.vendor_code,
        "Category": row.category,
        "Description": row.description,
        "Price": row.price,
        "Notes": row.product_details,
        "Image URL": row.image_url,
    } for row in rows], columns=REVIEW_COLUMNS)


def review_table_to_rows(review_df) -> list[ImportRow]:
    if review_df is None:
        return []
    rows = []
    for record in pd.DataFrame(review_df).to_dict("records"):
        vendor_code = _cell(record.get("Vendor Code")).upper()
        description = _cell(record.get("Description"))
        if not vendor_code and not description:
            continue
        rows.append(ImportRow(
            vendor_code=vendor_code,
            category=_cell(record.get("Category")) or CATCH_ALL_CATEGORY,
            description=description,
            manufacturer_description=description,
            product_details=_cell(record.get("Notes")),
            price=normalize_price(_cell(record.get("Price"))) or "",
            image_url=_cell(record.get("Image URL")),
        ))
    return rows


def confirm_bwa_import(review_df, pending_state):
    """Allocate catalog codes for the reviewed rows and store them.
    On failure the review table keeps only the rows that were not saved."""
    if not pending_state or not pending_state.get("records"):
        return "No pending extraction to import. Upload a PDF first.", None, review_df, pending_state

    rows = review_table_to_rows(review_df)
    if not rows:
        return "The review table is empty.", None, review_df, pending_state

    try:
        saved = pipeline.confirm_and_store(rows)
    except (AllocationConflict, ImportInterrupted) as e:
        logger.error(f"Import stopped after {e.saved_count} of {len(rows)}: {e}", exc_info=True)
        remaining = rows[e.saved_count:]
        return (
            f"Import stopped after {e.saved_count} of {len(rows)} products: "
            f"{_sanitize_error(e)}. The {len(remaining)} unsaved row(s) are left "
            f"in the review table, you can retry."
        ), None, _rows_to_review_df(remaining), pending_state

    df = pd.DataFrame([{
        "Code": p.code, "Category": p.category, "Name": p.name, "Price": p.price,
    } for p in saved])
    return f"Imported {len(saved)} products into the catalog.", df, None, {}


# ── Product Selection Tab ─────────────────────────────────────────────

def process_selection_upload(file, selection_state):
    """Match the codes in a customer quote PDF against the catalog."""
    pdf_bytes, name = _read_upload(file)
    if pdf_bytes is None:
        return name, None, "", selection_state

    try:
        extraction, match = pipeline.match_pdf(pdf_bytes)
    except ExtractionError as e:
        return f"{name}: {e.reason}", None, "", selection_state
    except CatalogLookupFailure as e:
        logger.error(f"Catalog lookup failed for {name}: {e}")
        return f"{name}: the catalog could not be searched. Try again.", None, "", selection_state
    except Exception as e:
        logger.error(f"Error matching {name}: {e}", exc_info=True)
        return f"{name}: ERROR - {_sanitize_error(e)}", None, "", selection_state

    if extraction.page_count == 0:
        return f"{name}: no extractable text.", None, "", selection_state

    selection_state = {"products": [p.model_dump() for p in match.matched]}
    df = pd.DataFrame([{
        "Code": p.code,
        "Description": p.description,
        "Price": "" if p.price is None else f"{p.price:.2f}",
        "Area": p.category,
        "Quantity": "",
        "Notes": "",
    } for p in match.matched], columns=SELECTION_COLUMNS)

    not_found_lines = []
    for code in match.not_found:
        hint = match.suggestions.get(code)
        not_found_lines.append(f"{code} (did you mean {', '.join(hint)}?)" if hint else code)

    status = (
        f"Found {len(extraction.all_codes)} codes in {name}: "
        f"{len(match.matched)} in the catalog, {len(match.not_found)} not found."
    )
    for anomaly in match.anomalies:
        status += f"\nWarning: {len(anomaly.product_ids)} catalog rows share code {anomaly.code}."
    return status, df, "\n".join(not_found_lines), selection_state


def generate_selection(address, selection_date, contact_name, company, phone_number,
                       email, selection_df, selection_state):
    """Build the selection document payload and offer it as a JSON download."""
    products = {
        p["code"].upper(): CatalogProduct(**p)
        for p in (selection_state or {}).get("products", [])
    }
    if not products:
        return "Upload a quote and match products first.", None

    try:
        header = SelectionHeader(
            address=(address or "")[:MAX_HEADER_FIELD_LEN],
            date=(selection_date or date.today().isoformat())[:MAX_HEADER_FIELD_LEN],
            contact_name=(contact_name or "")[:MAX_HEADER_FIELD_LEN],
            company=(company or "")[:MAX_HEADER_FIELD_LEN],
            phone_number=(phone_number or "")[:MAX_HEADER_FIELD_LEN],
            email=(email or "")[:MAX_HEADER_FIELD_LEN],
        )
    except ValidationError as e:
        return "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors()), None

    items = []
    rows = pd.DataFrame(selection_df).to_dict("records") if selection_df is not None else []
    for row in rows:
        product = products.get(_cell(row.get("Code")).upper())
        if product is None:
            continue
        items.append(SelectionItem(
            product=product,
            area_name=_cell(row.get("Area")) or CATCH_ALL_CATEGORY,
            quantity=_cell(row.get("Quantity")),
            notes=_cell(row.get("Notes")),
        ))
    if not items:
        return "No matched products left in the selection.", None

    payload = pipeline.build_selection_payload(header, items)
    out_path = Path(tempfile.gettempdir()) / "product_selection.json"
    out_path.write_text(json.dumps(payload, indent=2))
    return f"Selection ready with {len(items)} products.", str(out_path)


# ── Product Database Tab ──────────────────────────────────────────────

def get_product_counts():
    counts = db.get_product_counts()
    if not counts:
        return pd.DataFrame(columns=["Category", "Count"])
    return pd.DataFrame(counts).rename(columns={"category": "Category", "count": "Count"})


def search_products(search_term, category_filter):
    """Search products in the database."""
    search_term = (search_term or "")[:MAX_SEARCH_LEN].strip()

    if search_term:
        products = db.search_products(search_term)
        if category_filter and category_filter != "All":
            products = [p for p in products if p.category == category_filter]
    elif category_filter and category_filter != "All":
        products = db.get_all_products(category=category_filter)
    else:
        products = db.get_all_products()

    rows = [{
        "ID": p.id[:8],
        "Code": p.code,
        "Name": p.name,
        "Category": p.category,
        "Price": "" if p.price is None else f"{p.price:.2f}",
        "Details": p.product_details or "",
    } for p in products[:100]]
    return pd.DataFrame(rows) if rows else pd.DataFrame()


def export_csv():
    """Export all products as CSV."""
    try:
        df = pd.DataFrame([p.model_dump() for p in db.get_all_products()])
        csv_path = str(Path(tempfile.gettempdir()) / "products_export.csv")
        df.to_csv(csv_path, index=False)
        return csv_path
    except Exception as e:
        logger.error(f"CSV export error: {e}", exc_info=True)
        return None


def delete_product(product_id):
    """Delete a product by ID prefix."""
    if not product_id:
        return "Enter a product ID to delete."
    product_id = product_id.strip()[:64]
    try:
        for p in db.get_all_products():
            if p.id.startswith(product_id):
                db.delete_product(p.id)
                return f"Deleted product {p.code} ({p.id[:8]})"
        return f"No product found with ID starting with '{product_id}'"
    except Exception as e:
        logger.error(f"Delete error: {e}", exc_info=True)
        return f"Error deleting product: {_sanitize_error(e)}"


# ── Build Gradio UI ──────────────────────────────────────────────────

with gr.Blocks(title="ProductSheetPro - Admin Console") as admin_ui:

    # Session-scoped state for pending imports and selections
    pending_state = gr.State({})
    selection_state = gr.State({})

    gr.Markdown("# ProductSheetPro - Admin Console")
    gr.Markdown("Import vendor PDFs, build product selections, and manage the catalog.")

    with gr.Tabs():
        # ── BWA Import Tab ────────────────────────────────────────
        with gr.Tab("BWA Import"):
            with gr.Row():
                with gr.Column(scale=1):
                    import_file = gr.File(
                        label="Upload vendor PDF", file_types=[".pdf"], type="filepath",
                    )
                    import_profile = gr.Dropdown(
                        label="Document Layout",
                        choices=[AUTO_PROFILE] + list(PROFILES),
                        value=AUTO_PROFILE,
                    )
                    import_category = gr.Dropdown(
                        label="Default Category", choices=CATEGORIES, value=CATCH_ALL_CATEGORY,
                    )
                    import_btn = gr.Button("Extract Products", variant="primary")

                with gr.Column(scale=2):
                    import_status = gr.Textbox(label="Status", lines=4)
                    review_table = gr.Dataframe(
                        label="Extracted Products (edit before importing)",
                        headers=REVIEW_COLUMNS,
                        interactive=True,
                    )
                    confirm_btn = gr.Button("Import to Catalog", variant="secondary")
                    confirm_status = gr.Textbox(label="Import Status")
                    imported_table = gr.Dataframe(label="Imported Products")

            import_btn.click(
                process_bwa_upload,
                inputs=[import_file, import_profile, import_category, pending_state],
                outputs=[import_status, review_table, pending_state],
            )
            confirm_btn.click(
                confirm_bwa_import,
                inputs=[review_table, pending_state],
                outputs=[confirm_status, imported_table, review_table, pending_state],
            )

        # ── Product Selection Tab ─────────────────────────────────
        with gr.Tab("Product Selection"):
            with gr.Row():
                with gr.Column(scale=1):
                    sel_file = gr.File(
                        label="Upload customer quote PDF", file_types=[".pdf"], type="filepath",
                    )
                    sel_match_btn = gr.Button("Match Products", variant="primary")
                    sel_address = gr.Textbox(label="Address *", max_lines=1)
                    sel_date = gr.Textbox(
                        label="Date", value=date.today().isoformat(), max_lines=1,
                    )
                    sel_contact = gr.Textbox(label="Contact Name", max_lines=1)
                    sel_company = gr.Textbox(label="Company", max_lines=1)
                    sel_phone = gr.Textbox(label="Phone Number", max_lines=1)
                    sel_email = gr.Textbox(label="Email", max_lines=1)

                with gr.Column(scale=2):
                    sel_status = gr.Textbox(label="Status", lines=3)
                    sel_table = gr.Dataframe(
                        label="Matched Products (set area, quantity and notes)",
                        headers=SELECTION_COLUMNS,
                        interactive=True,
                    )
                    sel_not_found = gr.Textbox(label="Codes Not in Catalog", lines=4)
                    sel_generate_btn = gr.Button("Generate Selection", variant="secondary")
                    sel_generate_status = gr.Textbox(label="Selection Status")
                    sel_output = gr.File(label="Download Selection (JSON)")

            sel_match_btn.click(
                process_selection_upload,
                inputs=[sel_file, selection_state],
                outputs=[sel_status, sel_table, sel_not_found, selection_state],
            )
            sel_generate_btn.click(
                generate_selection,
                inputs=[sel_address, sel_date, sel_contact, sel_company, sel_phone,
                        sel_email, sel_table, selection_state],
                outputs=[sel_generate_status, sel_output],
            )

        # ── Product Database Tab ──────────────────────────────────
        with gr.Tab("Product Database"):
            with gr.Row():
                db_search = gr.Textbox(
                    label="Search",
                    placeholder="Search by code, name or description...",
                    max_lines=1,
                )
                db_category = gr.Dropdown(
                    label="Category", choices=["All"] + CATEGORIES, value="All",
                )
                db_search_btn = gr.Button("Search")

            product_table = gr.Dataframe(label="Products", interactive=False)

            with gr.Row():
                count_table = gr.Dataframe(
                    label="Product Counts", value=get_product_counts(), interactive=False,
                )
                refresh_counts_btn = gr.Button("Refresh Counts")

            with gr.Row():
                export_btn = gr.Button("Export CSV")
                export_output = gr.File(label="Download CSV")

            with gr.Row():
                delete_id = gr.Textbox(
                    label="Delete Product (enter ID prefix)",
                    placeholder="e.g. 'a1b2c3d4'",
                    max_lines=1,
                )
                delete_btn = gr.Button("Delete", variant="stop")
                delete_status = gr.Textbox(label="Delete Status")

            db_search_btn.click(
                search_products, inputs=[db_search, db_category], outputs=[product_table],
            )
            refresh_counts_btn.click(get_product_counts, outputs=[count_table])
            export_btn.click(export_csv, outputs=[export_output])
            delete_btn.click(delete_product, inputs=[delete_id], outputs=[delete_status])


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    launch_kwargs = {
        "server_name": os.getenv("ADMIN_HOST", "127.0.0.1"),
        "server_port": int(os.getenv("ADMIN_PORT", "7861")),
        "share": False,
        "max_file_size": f"{MAX_PDF_SIZE_MB}mb",
    }
    # Enable auth if credentials are set
    if ADMIN_USERNAME and ADMIN_PASSWORD:
        launch_kwargs["auth"] = (ADMIN_USERNAME, ADMIN_PASSWORD)
    admin_ui.launch(**launch_kwargs)
