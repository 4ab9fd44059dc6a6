import warnings

from fastapi.testclient import TestClient

from circulation import endpoints


def create_author(client, full_name="George Orwell"):
    response = client.post("/authors", json={"fullName": full_name, "bio": "English novelist"})
    return response.json()["id"]


def create_book(client, author_id, isbn="9780451524935", title="1984"):
    return client.post(
        "/books",
        json={"title": title, "isbn": isbn, "authorId": author_id, "publishYear": 1949},
    )


def test_health_check(client):
    """
    Test the health check endpoint.

    Verifies:
    - Endpoint returns 200 OK
    - Response contains expected status message
    """
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "circulation-api"}


def test_create_user_success(client):
    """
    Test successful reader registration.

    Verifies:
    - 201 Created status
    - Role defaults to READER and violation points start at 0
    - Response keys are camelCase
    """
    response = client.post(
        "/users", json={"fullName": "Ada Lovelace", "email": "ada@example.com"}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["fullName"] == "Ada Lovelace"
    assert data["role"] == "READER"
    assert data["violationPoints"] == 0
    assert "id" in data


def test_create_user_duplicate_email(client):
    user = {"fullName": "Ada Lovelace", "email": "ada@example.com"}
    client.post("/users", json=user)

    response = client.post("/users", json=user)
    assert response.status_code == 400
    assert "already exists" in response.json()["detail"]


def test_get_user(client):
    created = client.post(
        "/users",
        json={"fullName": "Grace Hopper", "email": "grace@example.com", "role": "LIBRARIAN"},
    ).json()

    response = client.get(f"/users/{created['id']}")
    assert response.status_code == 200
    assert response.json()["role"] == "LIBRARIAN"


def test_get_user_not_found(client):
    response = client.get("/users/99999")
    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_create_author_success(client):
    response = client.post("/authors", json={"fullName": "J.K. Rowling"})
    assert response.status_code == 201
    assert response.json()["fullName"] == "J.K. Rowling"
    assert response.json()["bio"] is None


def test_create_book_success(client):
    """
    Test successful book creation.

    Internal Working:
    1. Creates an author first (books require authorId)
    2. Creates a book linked to that author
    3. Verifies book includes author information in response
    """
    author_id = create_author(client)

    response = create_book(client, author_id)
    assert response.status_code == 201
    data = response.json()
    assert data["title"] == "1984"
    assert data["publishYear"] == 1949
    assert data["author"]["id"] == author_id
    assert data["author"]["fullName"] == "George Orwell"


def test_create_book_invalid_author(client):
    response = create_book(client, 99999)
    assert response.status_code == 404
    assert "Author" in response.json()["detail"]


def test_create_book_duplicate_isbn(client):
    author_id = create_author(client)
    create_book(client, author_id)

    response = create_book(client, author_id, title="Nineteen Eighty-Four")
    assert response.status_code == 400
    assert "ISBN" in response.json()["detail"]


def test_create_book_validation_error(client):
    """
    Test validation errors use the common error body.

    Verifies:
    - 422 status with a detail message and the failing fields
    """
    author_id = create_author(client)

    response = client.post("/books", json={"title": "", "isbn": "123", "authorId": author_id})
    assert response.status_code == 422
    data = response.json()
    assert data["detail"] == "Invalid request parameters. Please check your input."
    failed = {tuple(error["loc"]) for error in data["errors"]}
    assert ("body", "title") in failed
    assert ("body", "isbn") in failed


def test_validation_error_raises_no_deprecation_warning(client):
    """
    Test the 422 handler does not go through deprecated status constants.

    Verifies:
    - The response is 422 with the common error body
    - No warning mentioning a 422 status constant is emitted
    """
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        response = client.post("/authors", json={"bio": "missing name"})

    assert response.status_code == 422
    assert "errors" in response.json()
    assert not [w for w in caught if "HTTP_422" in str(w.message)]


def test_get_book(client):
    author_id = create_author(client)
    book_id = create_book(client, author_id).json()["id"]

    response = client.get(f"/books/{book_id}")
    assert response.status_code == 200
    assert response.json()["isbn"] == "9780451524935"

    assert client.get("/books/99999").status_code == 404


def test_add_copies_and_availability(client):
    """
    Test adding physical copies to a book.

    Verifies:
    - New copies are AVAILABLE with the given condition
    - Copy codes are unique
    - Availability counts the new copies
    """
    author_id = create_author(client)
    book_id = create_book(client, author_id).json()["id"]

    first = client.post(f"/books/{book_id}/items", json={"code": "ORW-001"})
    second = client.post(
        f"/books/{book_id}/items", json={"code": "ORW-002", "condition": "GOOD"}
    )
    duplicate = client.post(f"/books/{book_id}/items", json={"code": "ORW-001"})

    assert first.status_code == 201
    assert first.json()["status"] == "AVAILABLE"
    assert first.json()["condition"] == "NEW"
    assert second.json()["condition"] == "GOOD"
    assert duplicate.status_code == 400

    response = client.get(f"/books/{book_id}/availability")
    assert response.status_code == 200
    assert response.json() == {
        "bookId": book_id,
        "available": 2,
        "reserved": 0,
        "remaining": 2,
    }


def test_add_copy_to_missing_book(client):
    response = client.post("/books/99999/items", json={"code": "X-1"})
    assert response.status_code == 404


def test_add_edition(client):
    author_id = create_author(client)
    book_id = create_book(client, author_id).json()["id"]

    response = client.post(f"/books/{book_id}/editions", json={"fileFormat": "EPUB"})
    assert response.status_code == 201
    assert response.json() == {"id": response.json()["id"], "bookId": book_id, "fileFormat": "EPUB"}

    invalid = client.post(f"/books/{book_id}/editions", json={"fileFormat": "MOBI"})
    assert invalid.status_code == 422


def test_create_policy(client):
    policy = {"id": "LOST_BOOK", "name": "Lost book", "amount": 100}

    response = client.post("/policies", json=policy)
    assert response.status_code == 201
    assert response.json()["unit"] == "FIXED"

    duplicate = client.post("/policies", json=policy)
    assert duplicate.status_code == 400


def test_unexpected_errors_return_500(client, monkeypatch):
    """
    Test unhandled exceptions are turned into a generic 500 body.
    """

    def explode(db, data):
        raise RuntimeError("database exploded")

    monkeypatch.setattr(endpoints, "create_borrow_request", explode)

    with TestClient(endpoints.app, raise_server_exceptions=False) as safe_client:
        response = safe_client.post(
            "/borrow-requests",
            json={
                "userId": 1,
                "startDate": "2030-01-01",
                "endDate": "2030-01-10",
                "items": [{"bookId": 1}],
            },
        )
    assert response.status_code == 500
    assert response.json() == {"detail": "An unexpected error occurred. Please contact support."}
