import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jadwalin.main import Base, User, app, get_db, hash_password, issue_token

PASSWORD = "rahasia123"


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: str, name: str = None, **fields):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            name=name or f"{role.title()} {n}",
            email=fields.pop("email", f"{role}{n}@jadwalin.test"),
            password=hash_password(PASSWORD),
            role=role,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def token_for():
    def _token(user: User) -> dict:
        return {"session_token": issue_token(user)}

    return _token


@pytest.fixture
def admin(make_user):
    return make_user("super_admin", name="Super Admin")


@pytest.fixture
def kaprodi(make_user):
    return make_user("kaprodi", prodi="S1 Pendidikan Teknologi Informasi")


@pytest.fixture
def dosen(make_user):
    return make_user("dosen")


@pytest.fixture
def student(make_user):
    return make_user("mahasiswa", name="Andi Pratama", nim="25050974001", angkatan=2025)


@pytest.fixture
def subject_payload():
    def _payload(**overrides):
        data = {
            "kode": "PTI101",
            "nama": "Algoritma dan Pemrograman",
            "sks": 3,
            "semester": 1,
            "angkatan": 2025,
            "kelas": "A",
        }
        data.update(overrides)
        return data

    return _payload


@pytest.fixture
def open_subject(client, kaprodi, token_for, subject_payload):
    """A subject whose default offering has been opened for enrollment."""

    def _create(capacity=None, **overrides):
        auth = token_for(kaprodi)
        subject = client.post("/subjects", params=auth, json=subject_payload(**overrides)).json()
        offering = client.get("/offerings", params={**auth, "subject_id": subject["id"]}).json()[0]
        changes = {"status": "buka"}
        if capacity is not None:
            changes["capacity"] = capacity
        offering = client.put(f"/offerings/{offering['id']}", params=auth, json=changes).json()
        return subject, offering

    return _create
