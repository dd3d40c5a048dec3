import uuid

import pytest
from sqlalchemy import func, select

from clinicops.models import Patient, Role

PATIENT = {"firstName": "Ana", "lastName": "Silva", "phoneNumber": "555-0001"}


def test_create_patient(client, staff, branch, auth_headers):
    response = client.post(
        "/api/patients",
        json={**PATIENT, "primaryBranchId": str(branch.id)},
        headers=auth_headers(staff),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["firstName"] == "Ana"
    assert body["primaryBranchId"] == str(branch.id)
    assert response.headers["Location"] == f"/api/patients/{body['id']}"


def test_create_patient_trims_fields(client, staff, auth_headers):
    response = client.post(
        "/api/patients",
        json={"firstName": "  Ana ", "lastName": " Silva", "phoneNumber": " 555-0001 "},
        headers=auth_headers(staff),
    )

    assert response.status_code == 201
    assert response.json()["phoneNumber"] == "555-0001"
    assert response.json()["firstName"] == "Ana"


@pytest.mark.parametrize("role", [Role.ADMIN, Role.USER])
def test_admin_and_user_may_create(client, make_user, tenant, role, auth_headers):
    user = make_user(tenant, username=f"u-{role.value}", role=role)

    response = client.post("/api/patients", json=PATIENT, headers=auth_headers(user))

    assert response.status_code == 201


def test_viewer_cannot_create_patient(client, viewer, auth_headers, db_session):
    response = client.post("/api/patients", json=PATIENT, headers=auth_headers(viewer))

    assert response.status_code == 403
    assert response.json()["kind"] == "Forbidden"
    assert db_session.execute(select(func.count()).select_from(Patient)).scalar_one() == 0


def test_viewer_is_forbidden_even_with_invalid_body(client, viewer, auth_headers):
    response = client.post("/api/patients", json={"firstName": ""}, headers=auth_headers(viewer))
    assert response.status_code == 403


@pytest.mark.parametrize(
    "field, label",
    [("firstName", "FirstName"), ("lastName", "LastName"), ("phoneNumber", "PhoneNumber")],
)
def test_blank_fields_are_rejected(client, staff, auth_headers, field, label):
    response = client.post(
        "/api/patients", json={**PATIENT, field: "   "}, headers=auth_headers(staff)
    )

    assert response.status_code == 400
    assert response.json() == {"kind": "InvalidInput", "detail": f"{label} is required"}


def test_unknown_primary_branch_is_not_found(client, staff, auth_headers):
    response = client.post(
        "/api/patients",
        json={**PATIENT, "primaryBranchId": str(uuid.uuid4())},
        headers=auth_headers(staff),
    )
    assert response.status_code == 404


def test_other_tenants_branch_is_not_found(client, staff, make_tenant, make_branch, auth_headers):
    foreign_branch = make_branch(make_tenant())

    response = client.post(
        "/api/patients",
        json={**PATIENT, "primaryBranchId": str(foreign_branch.id)},
        headers=auth_headers(staff),
    )

    assert response.status_code == 404


def test_phone_unique_per_tenant_only(client, staff, make_tenant, make_user, auth_headers, db_session):
    other = make_user(make_tenant(), username="other")

    first = client.post("/api/patients", json=PATIENT, headers=auth_headers(staff))
    other_tenant = client.post("/api/patients", json=PATIENT, headers=auth_headers(other))
    duplicate = client.post("/api/patients", json=PATIENT, headers=auth_headers(staff))

    assert first.status_code == 201
    assert other_tenant.status_code == 201
    assert duplicate.status_code == 409
    assert duplicate.json()["conflict"] == "DuplicatePhone"
    count = db_session.execute(
        select(func.count())
        .select_from(Patient)
        .where(Patient.tenant_id == staff.tenant_id, Patient.phone_number == "555-0001")
    ).scalar_one()
    assert count == 1


def test_list_patients_is_tenant_scoped(client, staff, make_tenant, make_user, auth_headers):
    other = make_user(make_tenant(), username="other")
    client.post("/api/patients", json=PATIENT, headers=auth_headers(other))
    client.post(
        "/api/patients", json={**PATIENT, "phoneNumber": "555-0002"}, headers=auth_headers(staff)
    )

    response = client.get("/api/patients", headers=auth_headers(staff))

    assert response.status_code == 200
    assert [p["phoneNumber"] for p in response.json()] == ["555-0002"]


def test_list_patients_repeatable(client, staff, auth_headers):
    for phone in ("555-0001", "555-0002", "555-0003"):
        client.post("/api/patients", json={**PATIENT, "phoneNumber": phone}, headers=auth_headers(staff))

    first = client.get("/api/patients", headers=auth_headers(staff)).json()
    second = client.get("/api/patients", headers=auth_headers(staff)).json()

    assert first == second
    created = [p["createdAt"] for p in first]
    assert created == sorted(created, reverse=True)


def test_list_patients_by_branch(client, staff, branch, auth_headers):
    client.post(
        "/api/patients",
        json={**PATIENT, "primaryBranchId": str(branch.id)},
        headers=auth_headers(staff),
    )
    client.post("/api/patients", json={**PATIENT, "phoneNumber": "555-0002"}, headers=auth_headers(staff))

    response = client.get(
        "/api/patients", params={"branchId": str(branch.id)}, headers=auth_headers(staff)
    )

    assert [p["phoneNumber"] for p in response.json()] == ["555-0001"]


def test_viewer_can_list_patients(client, viewer, auth_headers):
    assert client.get("/api/patients", headers=auth_headers(viewer)).status_code == 200


def test_get_patient(client, staff, viewer, auth_headers):
    created = client.post("/api/patients", json=PATIENT, headers=auth_headers(staff)).json()

    response = client.get(f"/api/patients/{created['id']}", headers=auth_headers(viewer))

    assert response.status_code == 200
    assert response.json() == created


def test_get_patient_of_other_tenant_is_not_found(client, staff, make_tenant, make_user, auth_headers):
    other = make_user(make_tenant(), username="other")
    created = client.post("/api/patients", json=PATIENT, headers=auth_headers(other)).json()

    response = client.get(f"/api/patients/{created['id']}", headers=auth_headers(staff))

    assert response.status_code == 404


def test_viewer_is_forbidden_with_malformed_body(client, viewer, auth_headers):
    response = client.post(
        "/api/patients",
        content=b"{not json",
        headers={**auth_headers(viewer), "Content-Type": "application/json"},
    )

    assert response.status_code == 403
    assert response.json()["kind"] == "Forbidden"


def test_malformed_body_is_reported_without_offsets(client, staff, auth_headers):
    response = client.post(
        "/api/patients",
        content=b"{not json",
        headers={**auth_headers(staff), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"kind": "InvalidInput", "detail": "Request body is not valid JSON"}


def test_wrongly_typed_field_names_the_field(client, staff, auth_headers):
    response = client.post(
        "/api/patients",
        json={**PATIENT, "primaryBranchId": "not-a-uuid"},
        headers=auth_headers(staff),
    )

    assert response.status_code == 400
    assert response.json()["detail"].startswith("primaryBranchId: ")
