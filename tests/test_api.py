from datetime import date

from attendance_backend import main

from conftest import detected


def register(api, code="A1", first="Jane", last="Doe", descriptors=None):
    response = api.post("/students/register", json={
        "studentId": code,
        "firstName": first,
        "lastName": last,
        "email": f"{first.lower()}@example.com",
        "phoneNumber": "555-0100",
        "course": "CS101",
        "faceDescriptors": descriptors or [[0.0, 0.0, 0.0, 0.0]],
    })
    assert response.status_code == 201, response.text
    return response.json()["student"]


def test_health(api):
    body = api.get("/").json()
    assert body["status"] == "online"
    assert body["attendance_database"] is True
    assert body["match_threshold"] == 0.6


def test_register_and_list_students(api):
    student = register(api)
    assert student["studentId"] == "A1"
    assert student["faceDescriptors"] == [[0.0, 0.0, 0.0, 0.0]]

    listed = api.get("/students").json()
    assert listed["count"] == 1
    assert listed["students"][0]["id"] == student["id"]


def test_register_duplicate_and_invalid(api):
    register(api)
    duplicate = api.post("/students/register", json={
        "studentId": "A1", "firstName": "X", "lastName": "Y", "email": "x@y", "phoneNumber": "1",
        "faceDescriptors": [[1.0, 1.0, 1.0, 1.0]],
    })
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "DUPLICATE_STUDENT_ID"

    no_faces = api.post("/students/register", json={
        "studentId": "B2", "firstName": "X", "lastName": "Y", "email": "x@y", "phoneNumber": "1",
        "faceDescriptors": [],
    })
    assert no_faces.status_code == 400

    wrong_length = api.post("/students/register", json={
        "studentId": "B2", "firstName": "X", "lastName": "Y", "email": "x@y", "phoneNumber": "1",
        "faceDescriptors": [[1.0, 2.0]],
    })
    assert wrong_length.status_code == 400
    assert wrong_length.json()["error"] == "INVALID_DESCRIPTOR"
    assert api.get("/students").json()["count"] == 1


def test_mark_attendance_once_per_day(api):
    student = register(api)

    first = api.post("/attendance", json={"studentId": student["id"]})
    second = api.post("/attendance", json={"studentId": student["id"]})

    assert first.status_code == 201
    assert first.json()["created"] is True
    assert second.status_code == 200
    assert second.json()["status"] == "ALREADY_MARKED"

    today = date.today().isoformat()
    records = api.get("/attendance", params={"date": today}).json()
    assert records["count"] == 1
    assert records["records"][0]["date"] == today


def test_mark_unknown_student(api):
    response = api.post("/attendance", json={"studentId": "missing"})
    assert response.status_code == 404
    assert response.json()["status"] == "STUDENT_NOT_FOUND"


def test_delete_student_removes_attendance(api):
    student = register(api)
    api.post("/attendance", json={"studentId": student["id"]})

    response = api.delete(f"/students/{student['id']}")
    assert response.status_code == 200
    assert response.json()["records_removed"] == 1
    assert api.get("/attendance").json()["count"] == 0
    assert api.get(f"/students/{student['id']}").status_code == 404


def test_delete_and_clear_attendance(api):
    jane = register(api)
    john = register(api, code="B2", first="John", descriptors=[[1.0, 1.0, 1.0, 1.0]])
    record = api.post("/attendance", json={"studentId": jane["id"]}).json()["record"]
    api.post("/attendance", json={"studentId": john["id"]})

    assert api.delete(f"/attendance/{record['id']}").status_code == 200
    assert api.delete(f"/attendance/{record['id']}").status_code == 404
    assert api.delete("/attendance").json()["records_removed"] == 1


def test_export_csv(api):
    jane = register(api)
    api.post("/attendance", json={"studentId": jane["id"]})
    today = date.today().isoformat()

    response = api.get("/attendance/export", params={"date": today})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert f"attendance_export_{today}.csv" in response.headers["content-disposition"]
    lines = response.text.splitlines()
    assert len(lines) == 2
    assert lines[1].startswith(f"{today},")
    assert lines[1].endswith(",A1,Jane Doe,Yes")


def test_bad_date_is_rejected(api):
    response = api.get("/attendance", params={"date": "04/03/2024"})
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_recognize_marks_matched_faces(api, fake_engine, frame_bytes):
    jane = register(api)
    fake_engine.faces = [detected(0.1, 0, 0, 0), detected(0, 0.9, 0, 0)]

    response = api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")})
    body = response.json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["face_count"] == 2
    first, second = body["faces"]
    assert first["face_match"]["student_id"] == jane["id"]
    assert first["attendance"]["created"] is True
    assert second["face_match"]["matched"] is False
    assert second["attendance"] is None

    again = api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")}).json()
    assert again["faces"][0]["attendance"]["status"] == "ALREADY_MARKED"
    assert api.get("/attendance").json()["count"] == 1


def test_recognize_unmatched_face_creates_nothing(api, fake_engine, frame_bytes):
    register(api)
    fake_engine.faces = [detected(0, 0.9, 0, 0)]

    body = api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")}).json()

    assert body["success"] is False
    assert body["message"] == "Face not recognized - no matching student found"
    assert api.get("/attendance").json()["count"] == 0


def test_recognize_before_model_ready(api, fake_engine, frame_bytes):
    fake_engine.ready = False
    response = api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")})
    assert response.status_code == 503
    assert response.json()["error"] == "MODEL_NOT_READY"

    assert api.post("/model/load").json()["success"] is True
    assert api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")}).status_code == 200


def test_recognize_rejects_garbage_image(api):
    response = api.post("/recognize", files={"image": ("frame.jpg", b"not an image", "image/jpeg")})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_IMAGE"


def test_enroll_requires_exactly_one_face(api, fake_engine, frame_bytes):
    jane = register(api)
    files = {"image": ("face.jpg", frame_bytes, "image/jpeg")}

    fake_engine.faces = []
    assert api.post(f"/students/{jane['id']}/enroll", files=files).json()["error"] == "NO_FACE_DETECTED"

    fake_engine.faces = [detected(1, 0, 0, 0), detected(2, 0, 0, 0)]
    response = api.post(f"/students/{jane['id']}/enroll", files=files)
    assert response.json()["error"] == "MULTIPLE_FACES_DETECTED"

    fake_engine.faces = [detected(0.2, 0, 0, 0)]
    response = api.post(f"/students/{jane['id']}/enroll", files=files)
    assert response.status_code == 200
    assert response.json()["student"]["descriptorCount"] == 2


def test_register_from_images(api, fake_engine, frame_bytes):
    fake_engine.faces = [detected(0.5, 0.5, 0.5, 0.5)]
    form = {"studentId": "C3", "firstName": "Ada", "lastName": "Byron",
            "email": "ada@example.com", "phoneNumber": "1"}
    files = [("images", ("a.jpg", frame_bytes, "image/jpeg")), ("images", ("b.jpg", frame_bytes, "image/jpeg"))]

    response = api.post("/students/register/images", data=form, files=files)

    assert response.status_code == 201, response.text
    assert response.json()["student"]["descriptorCount"] == 2

    fake_engine.faces = []
    failed = api.post("/students/register/images", data=dict(form, studentId="D4"), files=files)
    assert failed.json()["error"] == "NO_FACE_DETECTED"
    assert api.get("/students").json()["count"] == 1


def test_match_endpoint(api):
    jane = register(api)
    body = api.post("/match", json={"descriptor": [0.0, 0.1, 0.0, 0.0]}).json()
    assert body["matched"] is True
    assert body["face_match"]["student_id"] == jane["id"]

    body = api.post("/match", json={"descriptor": [0.0, 0.9, 0.0, 0.0]}).json()
    assert body["matched"] is False


def test_daily_report_endpoint(api):
    jane = register(api)
    register(api, code="B2", first="John", descriptors=[[1.0, 1.0, 1.0, 1.0]])
    api.post("/attendance", json={"studentId": jane["id"]})

    report = api.get("/attendance/daily-report").json()["report"]
    assert report["present_count"] == 1
    assert report["absent_count"] == 1


def test_update_student(api):
    jane = register(api)
    response = api.put(f"/students/{jane['id']}", json={"course": "Math"})
    assert response.status_code == 200
    assert response.json()["student"]["course"] == "Math"
    assert main.student_service.get_student(jane["id"]).course == "Math"


def test_recognize_after_embedding_dim_change(api, fake_engine, frame_bytes):
    register(api)
    main.student_service.db.set_config("embedding_dim", "5")
    ada = register(api, code="C3", first="Ada", descriptors=[[0.0, 0.0, 0.0, 0.0, 0.0]])

    fake_engine.faces = [detected(0, 0, 0, 0)]
    stale = api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")})
    assert stale.status_code == 400
    assert stale.json()["error"] == "INVALID_DESCRIPTOR"

    fake_engine.faces = [detected(0.1, 0, 0, 0, 0)]
    body = api.post("/recognize", files={"image": ("frame.jpg", frame_bytes, "image/jpeg")}).json()
    assert body["faces"][0]["face_match"]["student_id"] == ada["id"]
    assert body["faces"][0]["attendance"]["created"] is True


def test_attendance_summary_endpoint(api):
    jane = register(api)
    register(api, code="B2", first="John", descriptors=[[1.0, 1.0, 1.0, 1.0]])
    api.post("/attendance", json={"studentId": jane["id"]})

    summary = api.get("/attendance/summary").json()["summary"]

    assert len(summary["trend"]) == 7
    assert summary["trend"][-1] == {"date": date.today().isoformat(), "present": 1, "absent": 1}
    assert summary["attendance_rate"] == round(1 / 14 * 100, 1)
    assert summary["recent"][0]["studentName"] == "Jane Doe"

    assert len(api.get("/attendance/summary", params={"days": 3}).json()["summary"]["trend"]) == 3
