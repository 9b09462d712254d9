import csv

import pytest

from fe_reactivation.models import ReactivationRecord, RecordResult, RunSummary
from fe_reactivation.records import RecordsError, load_records, write_report


def test_load_records_skips_blank_invalid_and_duplicates(tmp_path) -> None:
    path = tmp_path / "reactivate.csv"
    path.write_text(
        "\ufeffEmail,EmployeeType\n"
        "jane.doe@contoso.com, FTE \n"
        ",FTE\n"
        "not-an-email,FTE\n"
        "JANE.DOE@contoso.com,Contractor\n"
        "john@contoso.com,\n",
        encoding="utf-8",
    )

    records, skipped = load_records(path)

    assert records == [
        ReactivationRecord(email="jane.doe@contoso.com", employee_type="FTE", line_number=2),
        ReactivationRecord(email="john@contoso.com", employee_type="", line_number=6),
    ]
    assert skipped == 3


@pytest.mark.parametrize(
    "header",
    ["UserPrincipalName,Type", "upn,employee_type", "Mail,Employee Type"],
)
def test_load_records_accepts_header_aliases(tmp_path, header) -> None:
    path = tmp_path / "reactivate.csv"
    path.write_text(f"{header}\njane@contoso.com,FTE\n", encoding="utf-8")

    records, _ = load_records(path)

    assert records[0].email == "jane@contoso.com"
    assert records[0].employee_type == "FTE"


def test_unknown_email_header_raises(tmp_path) -> None:
    path = tmp_path / "reactivate.csv"
    path.write_text("E-mail Address,Type\njane@contoso.com,FTE\n", encoding="utf-8")

    with pytest.raises(RecordsError, match="no email column"):
        load_records(path)


def test_load_records_without_type_column(tmp_path) -> None:
    path = tmp_path / "reactivate.csv"
    path.write_text("Email\njane@contoso.com\n", encoding="utf-8")

    records, skipped = load_records(path)

    assert records[0].employee_type == ""
    assert skipped == 0


def test_missing_file_raises(tmp_path) -> None:
    with pytest.raises(RecordsError, match="does not exist"):
        load_records(tmp_path / "missing.csv")


def test_empty_file_has_no_email_column(tmp_path) -> None:
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")

    with pytest.raises(RecordsError, match="no email column"):
        load_records(path)


def test_write_report(tmp_path) -> None:
    ok = RecordResult(
        record=ReactivationRecord(email="jane@contoso.com", employee_type="FTE"),
        user_id="u-jane",
        user_principal_name="jane@contoso.com",
        temporary_password="Secret#123456",
    )
    ok.add("enable", "success")
    ok.add("mailbox", "warning", "no mailbox found")
    missing = RecordResult(record=ReactivationRecord(email="ghost@contoso.com"), not_found=True)
    missing.add("lookup", "error", "user not found")
    summary = RunSummary()
    summary.record(ok)
    summary.record(missing)

    path = write_report(tmp_path / "reports" / "run.csv", summary)

    with path.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert rows[0]["status"] == "warning"
    assert rows[0]["temporary_password"] == "Secret#123456"
    assert rows[0]["details"] == "enable=success; mailbox=warning (no mailbox found)"
    assert rows[1]["status"] == "failed"
    assert rows[1]["user_principal_name"] == ""
    assert summary.not_found == 1
