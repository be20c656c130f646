"""
Tests for the command line front end.
"""
import pytest

from main import parse_arguments, run_command
from conftest import png_bytes


def test_parse_queue_arguments():
    args = parse_arguments(["--actor", "alice", "queue", "--state", "Pending", "--flagged", "--per-page", "5"])

    assert args.command == "queue"
    assert args.actor == "alice"
    assert args.state == "Pending"
    assert args.flagged
    assert args.per_page == 5


def test_reject_requires_reason():
    with pytest.raises(SystemExit):
        parse_arguments(["reject", "bill_1"])


def test_upload_and_show(service, invoice_page, tmp_path):
    """Uploading a file prints the extracted bill; show adds the audit trail"""
    scan = tmp_path / "scan.png"
    scan.write_bytes(png_bytes(invoice_page[1]))

    uploaded = run_command(parse_arguments(["upload", str(scan), "--vendor", "acme"]), service)

    assert uploaded['status'] == "Extracted"
    assert uploaded['bill']['header']['invoice_number'] == "INV-1001"
    assert uploaded['bill']['header']['invoice_date'] == "2024-01-15"

    shown = run_command(parse_arguments(["show", uploaded['bill']['bill_id'], "--audit"]), service)
    assert [entry['action'] for entry in shown['audit']] == ["create"]


def test_upload_missing_file(service, tmp_path):
    with pytest.raises(FileNotFoundError):
        run_command(parse_arguments(["upload", str(tmp_path / "missing.png")]), service)


def test_queue_commands(service, uploaded):
    listing = run_command(parse_arguments(["queue", "--state", "Pending"]), service)
    stats = run_command(parse_arguments(["queue", "--stats"]), service)

    assert [row['bill_id'] for row in listing['bills']] == [uploaded.bill_id]
    assert stats['by_state']['Pending'] == 1


def test_match_accepts_suggestion(service, uploaded):
    line = uploaded.line_items[0]

    result = run_command(parse_arguments(["match", uploaded.bill_id, line.line_id]), service)

    assert result['matched_product_id'] == "prod_widget"
    assert result['status'] == "Matched"
