"""PDF tickets for confirmed reservations."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas
from sqlalchemy.orm import Session

from .auth import Caller
from .config import settings
from .crud import get_reservation
from .errors import Forbidden, InvalidState, NotFound
from .models import ReservationStatus
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

TICKET_NAME_PATTERN = re.compile(
    r"^ticket_(?P<reservation_id>[A-Za-z0-9-]+)_(?P<stamp>\d+)\.pdf$"
)
PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 50
BACKGROUND_COLOR = colors.HexColor("#111827")


@dataclass(frozen=True)
class TicketDetails:
    reservation_id: str
    participant_name: str
    event_title: str
    event_description: str
    event_location: str
    event_date: str
    event_time: str


@dataclass(frozen=True)
class TicketFile:
    file_name: str
    path: Path

    @property
    def download_url(self) -> str:
        return f"/api/v1/tickets/download/{self.file_name}"

    @property
    def view_url(self) -> str:
        return f"/api/v1/tickets/view/{self.file_name}"


def _tickets_dir() -> Path:
    directory = Path(settings.tickets_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _draw_background(pdf: canvas.Canvas) -> None:
    background = settings.ticket_background
    if background and Path(background).is_file():
        pdf.drawImage(
            str(background),
            0,
            0,
            width=PAGE_WIDTH,
            height=PAGE_HEIGHT,
            preserveAspectRatio=True,
            anchor="c",
        )
        return
    pdf.setFillColor(BACKGROUND_COLOR)
    pdf.rect(0, 0, PAGE_WIDTH, PAGE_HEIGHT, stroke=0, fill=1)


def _text(pdf: canvas.Canvas, font: str, size: int, top: float, value: str) -> None:
    """Draw left-aligned text with ``top`` measured from the top edge."""
    pdf.setFont(font, size)
    pdf.drawString(MARGIN, PAGE_HEIGHT - top - size, value)


def render_ticket_pdf(path: Path, details: TicketDetails) -> None:
    content_width = PAGE_WIDTH - 2 * MARGIN
    pdf = canvas.Canvas(str(path), pagesize=A4)
    pdf.setTitle(f"Ticket - {details.event_title}")
    _draw_background(pdf)
    pdf.setFillColor(colors.white)
    pdf.setStrokeColor(colors.white)

    pdf.setFont("Helvetica-Bold", 32)
    pdf.drawCentredString(PAGE_WIDTH / 2, PAGE_HEIGHT - 80 - 32, "EVENT TICKET")
    pdf.setFont("Helvetica", 12)
    pdf.drawCentredString(
        PAGE_WIDTH / 2,
        PAGE_HEIGHT - 130 - 12,
        f"Reservation ID: {details.reservation_id}",
    )

    _text(pdf, "Helvetica-Bold", 18, 200, "PARTICIPANT")
    _text(pdf, "Helvetica", 14, 230, f"Name: {details.participant_name}")

    pdf.setLineWidth(1)
    pdf.line(MARGIN, PAGE_HEIGHT - 250, PAGE_WIDTH - MARGIN, PAGE_HEIGHT - 250)
    pdf.line(MARGIN, PAGE_HEIGHT - 280, PAGE_WIDTH - MARGIN, PAGE_HEIGHT - 280)

    _text(pdf, "Helvetica-Bold", 18, 300, "EVENT DETAILS")
    _text(pdf, "Helvetica", 14, 330, f"Title: {details.event_title}")

    pdf.setFont("Helvetica", 12)
    description_lines = simpleSplit(
        f"Description: {details.event_description}", "Helvetica", 12, content_width
    )
    y = PAGE_HEIGHT - 360 - 12
    for line in description_lines[:4]:
        pdf.drawString(MARGIN, y, line)
        y -= 14

    _text(pdf, "Helvetica", 14, 420, f"Location: {details.event_location}")
    _text(pdf, "Helvetica", 14, 450, f"Date: {details.event_date}")
    _text(pdf, "Helvetica", 14, 480, f"Time: {details.event_time}")

    pdf.setFont("Helvetica-Oblique", 10)
    pdf.drawCentredString(
        PAGE_WIDTH / 2, 100, "This ticket confirms your reservation for the event."
    )
    pdf.showPage()
    pdf.save()


def generate_ticket(session: Session, reservation_id: str, caller: Caller) -> TicketFile:
    """Render a PDF ticket for a confirmed reservation."""
    reservation = get_reservation(session, reservation_id)
    if not reservation:
        raise NotFound("Reservation not found")
    if not caller.is_admin and reservation.participant_id != caller.user_id:
        raise Forbidden("You can only generate tickets for your own reservations")
    if reservation.status != ReservationStatus.CONFIRMED:
        raise InvalidState("Reservation must be confirmed to generate ticket")

    event = reservation.event
    participant = reservation.participant
    details = TicketDetails(
        reservation_id=reservation.id,
        participant_name=participant.name if participant else "Unknown",
        event_title=event.title,
        event_description=event.description or "",
        event_location=event.location,
        event_date=event.date.strftime("%B %d, %Y"),
        event_time=event.time,
    )

    file_name = f"ticket_{reservation.id}_{int(time.time() * 1000)}.pdf"
    target = _tickets_dir() / file_name
    partial = target.with_suffix(".pdf.partial")
    try:
        render_ticket_pdf(partial, details)
        partial.replace(target)
    finally:
        partial.unlink(missing_ok=True)
    logger.info("Generated ticket %s for reservation %s", file_name, reservation.id)
    return TicketFile(file_name=file_name, path=target)


def ticket_reservation_id(file_name: str) -> str:
    match = TICKET_NAME_PATTERN.match(file_name or "")
    if not match:
        raise NotFound("Ticket file not found")
    return match.group("reservation_id")


def get_ticket_path(file_name: str) -> Path:
    """Return the stored ticket path; only plain ticket file names resolve."""
    ticket_reservation_id(file_name)
    path = _tickets_dir() / file_name
    if not path.is_file():
        raise NotFound("Ticket file not found")
    return path


def purge_ticket_files(
    *, older_than: timedelta | None = None, now: datetime | None = None
) -> int:
    """Delete ticket PDFs older than the retention window; they can be regenerated."""
    retention = older_than if older_than is not None else settings.ticket_retention
    cutoff = (now or utcnow()) - retention
    removed = 0
    for path in _tickets_dir().glob("ticket_*.pdf"):
        if not TICKET_NAME_PATTERN.match(path.name):
            continue
        modified = datetime.fromtimestamp(path.stat().st_mtime, UTC).replace(tzinfo=None)
        if modified < cutoff:
            path.unlink(missing_ok=True)
            removed += 1
    return removed


def resolve_ticket_download(session: Session, file_name: str, caller: Caller) -> Path:
    """Return a ticket path the caller may read: the reservation owner or an admin."""
    reservation_id = ticket_reservation_id(file_name)
    if not caller.is_admin:
        reservation = get_reservation(session, reservation_id)
        if not reservation:
            raise NotFound("Ticket file not found")
        if reservation.participant_id != caller.user_id:
            raise Forbidden("You can only download your own tickets")
    return get_ticket_path(file_name)
