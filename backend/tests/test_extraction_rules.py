"""Tests for regex-based field extraction."""

from __future__ import annotations

import json

import pytest

from jobsync.extraction.rules import (
    DEFAULT_GAZETTEER,
    Gazetteer,
    clean_extracted_value,
    detect_job_type,
    detect_source,
    extract_application_url,
    extract_by_rules,
    extract_company_from_sender,
    extract_location,
    load_gazetteer,
    needs_llm_fallback,
)
from jobsync.extraction.types import ExtractedData

from conftest import make_message


class TestExtractByRules:
    def test_seek_submission_phrase(self):
        msg = make_message(
            "Application submitted",
            from_email="noreply@s.seek.com.au",
            from_name="SEEK Applications",
            text_body=(
                "Your application for Senior Backend Engineer was successfully "
                "submitted to Acme Pty Ltd."
            ),
        )
        data = extract_by_rules(msg)
        assert data.source == "SEEK"
        assert data.job_title == "Senior Backend Engineer"
        assert data.company == "Acme"
        assert data.is_complete

    def test_generic_confirmation(self):
        msg = make_message(
            "Thank you for applying to Acme Corp!",
            text_body=(
                "Your application for Data Analyst at Acme has been received.\n"
                "Location: Sydney NSW\n"
                "This is a full-time role.\n"
                "Track it at https://acme.io/careers/123\n"
            ),
        )
        data = extract_by_rules(msg)
        assert data.company == "Acme"
        assert data.job_title == "Data Analyst"
        assert data.location == "Sydney NSW"
        assert data.job_type == "full-time"
        assert data.application_url == "https://acme.io/careers/123"
        assert data.source is None

    def test_company_falls_back_to_sender_name(self):
        msg = make_message("Hello from us", from_name="Globex Recruiting", text_body="We will be in touch.")
        data = extract_by_rules(msg)
        assert data.company == "Globex"
        assert data.job_title is None
        assert needs_llm_fallback(data)

    def test_nothing_found(self):
        msg = make_message("Hi", from_name="Jane Smith", text_body="See you soon")
        data = extract_by_rules(msg)
        assert data.company is None
        assert data.job_title is None


class TestFieldExtractors:
    def test_detect_source_from_body(self):
        msg = make_message(
            "Your application",
            from_email="no-reply@acme.io",
            text_body="Apply via https://boards.greenhouse.io/acme/jobs/1",
        )
        assert detect_source(msg) == "Greenhouse"

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Software Engineer (FT)", "full-time"),
            ("6 month contract role", "contract"),
            ("Summer internship program", "internship"),
            ("Please find attached the draft software attempt", None),
            ("Soft skills matter", None),
            ("Template attached", None),
            ("Temp role, start Monday", "temporary"),
        ],
    )
    def test_detect_job_type(self, text, expected):
        assert detect_job_type(text) == expected

    def test_location_from_gazetteer(self):
        assert extract_location("The role is located in Melbourne, close to trams") == "Melbourne"
        assert extract_location("based in Auckland, New Zealand") == "Auckland"

    def test_custom_gazetteer(self):
        text = "Role sits in our Auckland office"
        assert extract_location(text, DEFAULT_GAZETTEER) is None
        assert extract_location(text, Gazetteer(cities=("Auckland",))) == "Auckland"

    def test_load_gazetteer(self, tmp_path):
        path = tmp_path / "places.json"
        path.write_text(json.dumps({"cities": ["Wellington"], "states": ["WGN"]}))
        gazetteer = load_gazetteer(path)
        assert gazetteer.cities == ("Wellington",)
        assert load_gazetteer(None) is DEFAULT_GAZETTEER

    def test_application_url_skips_blocked_links(self):
        text = "https://x.com/unsubscribe/jobs/1 and https://x.com/jobs/2"
        assert extract_application_url(text) == "https://x.com/jobs/2"

    def test_application_url_falls_back_to_any_link(self):
        assert extract_application_url("logo https://x.com/a.png see https://x.com/about") == "https://x.com/about"

    def test_company_from_sender(self):
        assert extract_company_from_sender("Acme Careers") == "Acme"
        assert extract_company_from_sender("Globex") == "Globex"
        assert extract_company_from_sender("Jane Smith") is None
        assert extract_company_from_sender("") is None

    def test_clean_extracted_value(self):
        assert clean_extracted_value('  "Initech Pty Ltd."  ') == "Initech"
        assert clean_extracted_value("R&amp;D&nbsp;Labs") == "R&D Labs"
        assert clean_extracted_value("...") is None


class TestExtractedData:
    def test_merge_fills_only_missing(self):
        rules = ExtractedData(company="Acme", location=None)
        model = ExtractedData(company="Acme Corporation", job_title="Engineer", location="Perth")
        merged = rules.merge(model)
        assert merged.company == "Acme"
        assert merged.job_title == "Engineer"
        assert merged.location == "Perth"

    def test_round_trip_wire_names(self):
        data = ExtractedData(company="Acme", job_title="Engineer", application_url="https://a.io/jobs/1")
        wire = data.to_dict()
        assert wire["jobTitle"] == "Engineer"
        assert wire["applicationUrl"] == "https://a.io/jobs/1"
        assert ExtractedData.from_dict(wire) == data

    def test_from_dict_drops_placeholders(self):
        data = ExtractedData.from_dict({"company": "null", "job_title": "Engineer", "location": "N/A"})
        assert data.company is None
        assert data.job_title == "Engineer"
        assert data.location is None
