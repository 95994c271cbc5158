import pytest

from csvgov.connector.sources import DataSourceError, list_candidate_files, read_rows, read_table


def test_read_table(csv_file):
    table = read_table(csv_file)

    assert table.header == ["username", "first_name", "last_name", "department", "ent_Role", "ent_App"]
    assert len(table.rows) == 4
    assert table.rows[0]["ent_App"] == "Payroll, Ledger"
    assert table.rows[3]["ent_Role"] == ""


def test_values_trimmed_and_blank_lines_dropped(tmp_path):
    path = tmp_path / "people.csv"
    path.write_text("\ufeffemail , ent_Role\n a@example.com ,  Admin \n,\n\nb@example.com,\n", encoding="utf-8")

    rows = read_rows(path)

    assert rows == [
        {"email": "a@example.com", "ent_Role": "Admin"},
        {"email": "b@example.com", "ent_Role": ""},
    ]


def test_short_rows_padded(tmp_path):
    path = tmp_path / "people.csv"
    path.write_text("email,department\na@example.com\n")

    assert read_rows(path) == [{"email": "a@example.com", "department": ""}]


def test_missing_file(tmp_path):
    with pytest.raises(DataSourceError):
        read_table(tmp_path / "nope.csv")


def test_undecodable_file(tmp_path):
    path = tmp_path / "binary.csv"
    path.write_bytes(b"email\n\xff\xfe\xfa\n")

    with pytest.raises(DataSourceError):
        read_table(path)


def test_list_candidate_files(tmp_path):
    for name in ["b.csv", "a.CSV", "notes.txt"]:
        (tmp_path / name).write_text("x\n")
    (tmp_path / "dir.csv").mkdir()

    assert [p.name for p in list_candidate_files(tmp_path)] == ["a.CSV", "b.csv"]
    assert list_candidate_files(tmp_path / "missing") == []
