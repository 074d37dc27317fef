"""Tests for profile checks, filing frequency and JPK deadlines."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from vat_engine.compliance import (
    ClientProfile,
    FilingFrequency,
    TaxpayerKind,
    TaxpayerStanding,
    check_accelerated_refund,
    check_filing_frequency,
    check_settlement_period,
    filing_due_date,
    get_filing_deadlines,
    is_valid_nip,
    validate_client_profile,
    validate_document_totals,
    validate_eu_vat_id,
    validate_period_label,
)
from vat_engine.exceptions import FilingFrequencyMismatch, ValidationError
from vat_engine.periods import PeriodKey


@pytest.fixture
def company() -> ClientProfile:
    return ClientProfile(
        client_id="ACME",
        nip="526-025-02-74",
        kind=TaxpayerKind.LEGAL_ENTITY,
        full_name="ACME Handel Sp. z o.o.",
        tax_office_code="1471",
        email="biuro@acme.example.pl",
    )


@pytest.fixture
def person() -> ClientProfile:
    return ClientProfile(
        client_id="JK",
        nip="1234563218",
        kind=TaxpayerKind.NATURAL_PERSON,
        first_name="Jan",
        last_name="Kowalski",
        birth_date=date(1980, 5, 1),
        tax_office_code="1435",
        email="jan@example.pl",
        filing_frequency=FilingFrequency.QUARTERLY,
        small_taxpayer=True,
    )


# ── Identifiers ──────────────────────────────────────────────────────


@pytest.mark.parametrize("nip,valid", [
    ("5260250274", True),
    ("526-025-02-74", True),
    ("1234563218", True),
    ("1234563219", False),
    ("123456321", False),
    ("abcdefghij", False),
    ("", False),
])
def test_nip_checksum(nip: str, valid: bool):
    assert is_valid_nip(nip) is valid


def test_eu_vat_id_validation():
    assert validate_eu_vat_id("DE123456789").ok
    result = validate_eu_vat_id("XX1")
    assert not result.ok
    assert result.errors[0].field == "vat_id"


def test_period_label_validation():
    assert validate_period_label("2024-Q1").ok
    assert not validate_period_label("2024-00").ok


# ── Profiles ─────────────────────────────────────────────────────────


def test_complete_profiles_are_valid(company: ClientProfile, person: ClientProfile):
    assert validate_client_profile(company).ok
    assert validate_client_profile(person).ok


def test_legal_entity_needs_name(company: ClientProfile):
    result = validate_client_profile(replace(company, full_name=None))
    assert [i.field for i in result.errors] == ["full_name"]


def test_natural_person_needs_personal_data(person: ClientProfile):
    result = validate_client_profile(replace(person, first_name=None, birth_date=None))
    fields = {i.field for i in result.errors}
    assert fields == {"first_name", "birth_date"}


def test_collects_every_error(company: ClientProfile):
    broken = replace(company, nip="1", tax_office_code="14", email="nope")
    result = validate_client_profile(broken)
    assert {i.field for i in result.errors} == {"nip", "tax_office_code", "email"}
    with pytest.raises(ValidationError) as exc_info:
        result.raise_for_errors()
    assert len(exc_info.value.errors) == 3


def test_quarterly_requires_small_taxpayer(person: ClientProfile):
    result = validate_client_profile(replace(person, small_taxpayer=False))
    assert result.errors[0].field == "filing_frequency"


def test_profile_from_dict():
    profile = ClientProfile.from_dict({
        "client_id": "X",
        "nip": "1234563218",
        "kind": "natural_person",
        "birth_date": "1990-01-31",
        "filing_frequency": "quarterly",
    })
    assert profile.kind == TaxpayerKind.NATURAL_PERSON
    assert profile.birth_date == date(1990, 1, 31)
    assert profile.filing_frequency == FilingFrequency.QUARTERLY


def test_display_name(company: ClientProfile, person: ClientProfile):
    assert company.display_name == "ACME Handel Sp. z o.o."
    assert person.display_name == "Jan Kowalski"
    assert company.normalized_nip == "5260250274"


# ── Filing frequency ─────────────────────────────────────────────────


def test_monthly_declaration_for_quarterly_client(person: ClientProfile):
    with pytest.raises(FilingFrequencyMismatch) as exc_info:
        check_filing_frequency(person, FilingFrequency.MONTHLY)
    assert exc_info.value.rule == "filing_frequency"


def test_matching_frequency_passes(company: ClientProfile):
    check_filing_frequency(company, FilingFrequency.MONTHLY)
    check_settlement_period(company, PeriodKey.of_month(2024, 3))


def test_settlement_period_kind_must_match(company: ClientProfile, person: ClientProfile):
    with pytest.raises(FilingFrequencyMismatch):
        check_settlement_period(company, PeriodKey.of_quarter(2024, 1))
    with pytest.raises(FilingFrequencyMismatch):
        check_settlement_period(person, PeriodKey.of_month(2024, 3))


# ── Deadlines ────────────────────────────────────────────────────────


def test_due_date_is_25th_of_next_month():
    assert filing_due_date(PeriodKey.of_month(2024, 3)) == date(2024, 4, 25)
    assert filing_due_date(PeriodKey.of_month(2024, 12)) == date(2025, 1, 25)
    assert filing_due_date(PeriodKey.of_quarter(2024, 2)) == date(2024, 7, 25)


def test_monthly_calendar(company: ClientProfile):
    deadlines = get_filing_deadlines(company, 2024, as_of=date(2024, 1, 1))
    assert len(deadlines) == 12
    assert all(d.includes_declaration for d in deadlines)
    assert all(d.status == "pending" for d in deadlines)


def test_quarterly_declaration_months(person: ClientProfile):
    deadlines = get_filing_deadlines(person, 2024, as_of=date(2024, 1, 1))
    with_declaration = [d.period.month for d in deadlines if d.includes_declaration]
    assert with_declaration == [3, 6, 9, 12]


def test_overdue_and_filed(company: ClientProfile):
    deadlines = get_filing_deadlines(
        company, 2024, filed={"2024-01"}, as_of=date(2024, 3, 26)
    )
    by_label = {d.period.label: d for d in deadlines}
    assert by_label["2024-01"].status == "filed"
    assert by_label["2024-02"].status == "overdue"
    assert by_label["2024-02"].is_overdue is True
    assert by_label["2024-03"].status == "pending"
    assert by_label["2024-03"].days_until_due == 30


# ── Accelerated refund ───────────────────────────────────────────────


APRIL_10 = date(2024, 4, 10)


def test_accelerated_refund_good_standing():
    standing = TaxpayerStanding(
        late_filings=(date(2023, 2, 27),),
        white_list_active=True,
        white_list_verified_on=date(2024, 1, 15),
    )
    assert check_accelerated_refund(standing, APRIL_10).ok


def test_accelerated_refund_late_filing_and_arrears():
    standing = TaxpayerStanding(
        late_filings=(date(2023, 11, 27), date(2024, 2, 26)),
        arrears=Decimal("15.00"),
        white_list_active=True,
        white_list_verified_on=date(2024, 1, 15),
    )
    result = check_accelerated_refund(standing, APRIL_10)
    assert [i.field for i in result.errors] == ["late_filings", "arrears"]
    assert "2 late filing(s)" in result.errors[0].message


@pytest.mark.parametrize("active,verified_on", [
    (False, date(2024, 1, 15)),
    (True, None),
    (True, date(2023, 4, 9)),
])
def test_accelerated_refund_white_list(active, verified_on):
    standing = TaxpayerStanding(white_list_active=active, white_list_verified_on=verified_on)
    result = check_accelerated_refund(standing, APRIL_10)
    assert [i.field for i in result.errors] == ["white_list"]


# ── Generated documents ──────────────────────────────────────────────


_DOC = b"""<?xml version='1.0' encoding='UTF-8'?>
<JPK xmlns="http://crd.gov.pl/wzor/2021/12/27/11148/">
  <Deklaracja>
    <PozycjeSzczegolowe>
      <P_38>230</P_38>
      <P_48>92</P_48>
      <P_51>138</P_51>
    </PozycjeSzczegolowe>
  </Deklaracja>
  <Ewidencja>
    <SprzedazWiersz><K_19>1000.00</K_19><K_20>230.00</K_20></SprzedazWiersz>
    <SprzedazCtrl><LiczbaWierszySprzedazy>1</LiczbaWierszySprzedazy><PodatekNalezny>230.00</PodatekNalezny></SprzedazCtrl>
    <ZakupWiersz><K_42>400.00</K_42><K_43>92.00</K_43></ZakupWiersz>
    <ZakupCtrl><LiczbaWierszyZakupow>1</LiczbaWierszyZakupow><PodatekNaliczony>92.00</PodatekNaliczony></ZakupCtrl>
  </Ewidencja>
</JPK>"""


def test_document_totals_consistent():
    assert validate_document_totals(_DOC).ok


def test_document_control_mismatch():
    tampered = _DOC.replace(b"<PodatekNalezny>230.00", b"<PodatekNalezny>231.00")
    result = validate_document_totals(tampered)
    assert [i.field for i in result.errors] == ["PodatekNalezny"]


def test_document_declaration_mismatch():
    tampered = _DOC.replace(b"<P_51>138", b"<P_51>139")
    assert [i.field for i in validate_document_totals(tampered).errors] == ["P_51"]


def test_document_not_xml():
    assert not validate_document_totals(b"not xml").ok


_PARTY_DOC = b"""<?xml version='1.0' encoding='UTF-8'?>
<JPK>
  <Ewidencja>
    <SprzedazWiersz><LpSprzedazy>1</LpSprzedazy><NrKontrahenta>1234563218</NrKontrahenta><K_19>100.00</K_19><K_20>23.00</K_20></SprzedazWiersz>
    <SprzedazWiersz><LpSprzedazy>2</LpSprzedazy><NrKontrahenta>1234567890</NrKontrahenta><K_19>100.00</K_19><K_20>23.00</K_20></SprzedazWiersz>
    <SprzedazWiersz><LpSprzedazy>3</LpSprzedazy><NrKontrahenta>BRAK</NrKontrahenta><K_19>100.00</K_19><K_20>23.00</K_20></SprzedazWiersz>
    <SprzedazWiersz><LpSprzedazy>4</LpSprzedazy><KodKrajuNadaniaTIN>DE</KodKrajuNadaniaTIN><NrKontrahenta>123456789</NrKontrahenta><K_21>100.00</K_21></SprzedazWiersz>
    <SprzedazCtrl><LiczbaWierszySprzedazy>4</LiczbaWierszySprzedazy><PodatekNalezny>69.00</PodatekNalezny></SprzedazCtrl>
    <ZakupWiersz><LpZakupu>1</LpZakupu><NrDostawcy>526-025-02-75</NrDostawcy><K_42>400.00</K_42><K_43>92.00</K_43></ZakupWiersz>
    <ZakupCtrl><LiczbaWierszyZakupow>1</LiczbaWierszyZakupow><PodatekNaliczony>92.00</PodatekNaliczony></ZakupCtrl>
  </Ewidencja>
</JPK>"""


def test_document_record_nips():
    result = validate_document_totals(_PARTY_DOC)
    assert [i.field for i in result.errors] == ["NrKontrahenta", "NrDostawcy"]
    assert "record 2" in result.errors[0].message
    assert "record 1" in result.errors[1].message
