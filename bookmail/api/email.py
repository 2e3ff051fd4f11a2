"""Manual lesson send, for checking content and provider setup."""

from fastapi import APIRouter, HTTPException, status

from bookmail.core.errors import EmailProviderError
from bookmail.core.timeconv import utc_now
from bookmail.dependencies import AppSettings, Config, DBSession, Sender
from bookmail.schemas.logs import TestSendRequest, TestSendResponse
from bookmail.services.delivery import DeliveryExecutor
from bookmail.services.store import SqlDeliveryStore

router = APIRouter()


@router.post("/email/test", response_model=TestSendResponse)
async def send_test_email(
    body: TestSendRequest,
    db: DBSession,
    sender: Sender,
    settings: AppSettings,
    config: Config,
) -> TestSendResponse:
    """
    Send one lesson to any address.

    Not logged and never touches assignment progress.
    """
    store = SqlDeliveryStore(db)
    lesson = await store.get_lesson(body.lesson_id)
    if lesson is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lesson not found")

    executor = DeliveryExecutor(store, sender, config.email, from_email=settings.resend_from_email)
    try:
        email_id = await executor.send_test(str(body.email), lesson, lesson.book.title)
    except EmailProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to send email: {e}",
        ) from e

    return TestSendResponse(
        email_id=email_id,
        recipient=str(body.email),
        subject=lesson.display_subject,
        book_title=lesson.book.title,
        book_author=lesson.book.author,
        lesson_day=lesson.day_number,
        sent_at=utc_now(),
    )
