"""Tests for the export endpoints."""

import csv
import io


def create_record(client, headers, patient_id="PAT-300001-EXP", **overrides):
    payload = {
        "patient_external_id": patient_id,
        "first_name": "Ana",
        "last_name": "Lima",
        "date_of_birth": "1990-01-15",
        "diagnosis": "Asthma, mild persistent",
    }
    payload.update(overrides)
    response = client.post("/api/patients", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestPdfExport:
    def test_pdf_download(self, client, researcher_headers):
        record = create_record(client, researcher_headers)

        response = client.get(f"/api/export/pdf/{record['id']}", headers=researcher_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == 'attachment; filename="patient_PAT-300001-EXP.pdf"'
        assert response.content.startswith(b"%PDF")

    def test_pdf_unknown_record(self, client, researcher_headers):
        assert client.get("/api/export/pdf/404", headers=researcher_headers).status_code == 404

    def test_pdf_requires_authentication(self, client):
        assert client.get("/api/export/pdf/1").status_code == 401


class TestCsvExport:
    """Test suite for the CSV download."""

    def test_csv_download(self, client, researcher_headers):
        create_record(client, researcher_headers)
        create_record(client, researcher_headers, patient_id="PAT-300002-EXP", notes='Said "fine", then left')

        response = client.get("/api/export/csv", headers=researcher_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "all_patient_records.csv" in response.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert len(rows) == 2
        assert {row["patient_external_id"] for row in rows} == {"PAT-300001-EXP", "PAT-300002-EXP"}
        assert 'Said "fine", then left' in {row["notes"] for row in rows}

    def test_csv_without_records(self, client, researcher_headers):
        response = client.get("/api/export/csv", headers=researcher_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "No records found"}
