from datetime import date, timedelta

from circulation import models


def ebook_payload(user, book, days=14):
    return {
        "userId": user.id,
        "bookId": book.id,
        "startDate": date.today().isoformat(),
        "endDate": (date.today() + timedelta(days=days)).isoformat(),
    }


def test_borrow_ebook(client, factory, db_session, notification_sink):
    """
    Test borrowing an electronic edition.

    Verifies:
    - Status code is 201
    - The request is FULFILLED at once and a BORROWED record exists
    - Physical copies of the book are untouched
    - The reader is notified
    """
    reader = factory.user()
    book = factory.book(copies=1, title="Ulysses")
    factory.edition(book)

    response = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))

    assert response.status_code == 201
    data = response.json()
    assert data["borrowRequest"]["status"] == "FULFILLED"
    assert data["borrowRequest"]["items"][0]["quantity"] == 1
    assert data["borrowRecord"]["status"] == "BORROWED"
    assert "Ulysses" in data["message"]

    db_session.expire_all()
    copy = db_session.query(models.BookItem).filter_by(book_id=book.id).one()
    assert copy.status == models.ItemStatus.AVAILABLE
    assert notification_sink.titles() == ["Ebook Borrowed Successfully"]


def test_ebook_does_not_affect_hold_queue(client, factory):
    reader = factory.user()
    book = factory.book(copies=0)
    factory.edition(book, models.FileFormat.EPUB)
    factory.request(factory.user(), [(book, 1)])

    response = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))

    assert response.status_code == 201
    availability = client.get(f"/books/{book.id}/availability").json()
    assert availability["reserved"] == 0


def test_book_without_electronic_edition(client, factory):
    reader = factory.user()
    book = factory.book(copies=1)

    response = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))

    assert response.status_code == 404
    assert response.json()["detail"] == "This book does not have an electronic version"


def test_unknown_book(client, factory):
    reader = factory.user()
    payload = {
        "userId": reader.id,
        "bookId": 999,
        "startDate": date.today().isoformat(),
        "endDate": (date.today() + timedelta(days=7)).isoformat(),
    }

    response = client.post("/ebook-borrow-requests", json=payload)

    assert response.status_code == 404


def test_ebook_already_borrowed(client, factory):
    reader = factory.user()
    book = factory.book()
    factory.edition(book)
    client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))

    response = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))

    assert response.status_code == 400
    assert response.json()["detail"].startswith("You have already borrowed this ebook")


def test_ebook_period_too_long(client, factory):
    reader = factory.user()
    book = factory.book()
    factory.edition(book)

    response = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book, days=45))

    assert response.status_code == 400


def test_return_ebook_then_borrow_again(client, factory, notification_sink):
    reader = factory.user()
    book = factory.book()
    factory.edition(book)
    borrowed = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))
    record_id = borrowed.json()["borrowRecord"]["id"]

    returned = client.post(f"/borrow-records/{record_id}/return-ebook")

    assert returned.status_code == 200
    assert returned.json()["borrowRecord"]["status"] == "RETURNED"
    assert returned.json()["borrowRecord"]["actualReturnDate"] is not None
    assert "Ebook Returned Successfully" in notification_sink.titles()

    again = client.post("/ebook-borrow-requests", json=ebook_payload(reader, book))
    assert again.status_code == 201

    record = client.get(f"/borrow-records/{record_id}").json()
    assert record["borrowEbooks"] == [{"bookId": book.id, "isDeleted": True}]


def test_return_ebook_twice(client, factory):
    reader = factory.user()
    book = factory.book()
    factory.edition(book)
    record_id = client.post(
        "/ebook-borrow-requests", json=ebook_payload(reader, book)
    ).json()["borrowRecord"]["id"]
    client.post(f"/borrow-records/{record_id}/return-ebook")

    response = client.post(f"/borrow-records/{record_id}/return-ebook")

    assert response.status_code == 400
    assert response.json()["detail"] == "This borrow record has already been returned"


def test_return_ebook_on_physical_loan(client, factory):
    reader = factory.user()
    (item,) = factory.copies(factory.book(), 1)
    loan = factory.loan(reader, [item])

    response = client.post(f"/borrow-records/{loan.id}/return-ebook")

    assert response.status_code == 400
    assert response.json()["detail"] == "This is not an ebook borrow record"


def test_physical_return_on_ebook_loan(client, factory):
    reader = factory.user()
    book = factory.book()
    factory.edition(book)
    record_id = client.post(
        "/ebook-borrow-requests", json=ebook_payload(reader, book)
    ).json()["borrowRecord"]["id"]

    response = client.post(f"/borrow-records/{record_id}/return", json={})

    assert response.status_code == 400
    assert "return-ebook" in response.json()["detail"]
