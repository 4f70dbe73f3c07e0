from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


Money = Numeric(10, 2)


class Base(DeclarativeBase):
    pass


class Omd(Base):
    __tablename__ = "omds"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")  # pending|approved|rejected


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    omd_id: Mapped[str | None] = mapped_column(ForeignKey("omds.id"), index=True)
    role: Mapped[str] = mapped_column(String, index=True)  # super_admin|omd_admin|business_admin
    name: Mapped[str | None] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String)


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    omd_id: Mapped[str] = mapped_column(ForeignKey("omds.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, index=True)
    business_type: Mapped[str] = mapped_column(String, default="hotel")  # hotel|restaurant|experience
    status: Mapped[str] = mapped_column(String, default="active")
    contact: Mapped[dict] = mapped_column(JSON, default=dict)  # {"email": ..., "phone": ...}


class Hotel(Base):
    __tablename__ = "hotels"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.id"), index=True)
    pms_type: Mapped[str] = mapped_column(String, default="internal")  # internal|octorate
    octorate_connection_id: Mapped[str | None] = mapped_column(String)


class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    hotel_id: Mapped[str] = mapped_column(ForeignKey("hotels.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    room_type: Mapped[str] = mapped_column(String, default="standard")
    base_price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    max_occupancy: Mapped[int] = mapped_column(Integer, default=2)
    min_stay_nights: Mapped[int] = mapped_column(Integer, default=1)
    quantity: Mapped[int] = mapped_column(Integer, default=1)  # sellable units of this type
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    octorate_room_id: Mapped[str | None] = mapped_column(String, index=True)
    is_synced_from_octorate: Mapped[bool] = mapped_column(Boolean, default=False)
    last_synced_from_octorate_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class RoomPricingRule(Base):
    __tablename__ = "room_pricing"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    start_date: Mapped[date] = mapped_column(Date, index=True)
    end_date: Mapped[date] = mapped_column(Date, index=True)  # inclusive
    price_per_night: Mapped[Decimal] = mapped_column(Money)
    min_stay: Mapped[int] = mapped_column(Integer, default=1)
    pricing_type: Mapped[str] = mapped_column(String, default="custom")  # custom|template|octorate
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_synced_from_octorate: Mapped[bool] = mapped_column(Boolean, default=False)


class RoomAvailability(Base):
    """
    Per-night inventory override for a room.

    Rows are written by the Octorate availability pull; rooms without a row
    for a date fall back to `Room.quantity`.
    """

    __tablename__ = "room_availability"
    __table_args__ = (UniqueConstraint("room_id", "date", name="uq_room_availability_room_date"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    day: Mapped[date] = mapped_column("date", Date, index=True)
    available_quantity: Mapped[int] = mapped_column(Integer, default=0)
    availability_status: Mapped[str] = mapped_column(String, default="available")  # available|blocked
    is_synced_from_octorate: Mapped[bool] = mapped_column(Boolean, default=False)
    last_synced_from_octorate_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class GuestProfile(Base):
    __tablename__ = "guest_profiles"
    __table_args__ = (UniqueConstraint("email", name="uq_guest_profiles_email"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    first_name: Mapped[str] = mapped_column(String)
    last_name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, index=True)
    phone: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class BookingChannel(Base):
    __tablename__ = "booking_channels"
    __table_args__ = (UniqueConstraint("name", name="uq_booking_channels_name"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, index=True)
    display_name: Mapped[str] = mapped_column(String)
    channel_type: Mapped[str] = mapped_column(String, default="direct")


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    confirmation_number: Mapped[str] = mapped_column(String, unique=True, index=True)

    hotel_id: Mapped[str] = mapped_column(ForeignKey("hotels.id"), index=True)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    guest_id: Mapped[str] = mapped_column(ForeignKey("guest_profiles.id"), index=True)
    channel_id: Mapped[str | None] = mapped_column(ForeignKey("booking_channels.id"))

    check_in_date: Mapped[date] = mapped_column(Date, index=True)
    check_out_date: Mapped[date] = mapped_column(Date, index=True)
    adults: Mapped[int] = mapped_column(Integer, default=1)
    children: Mapped[int] = mapped_column(Integer, default=0)
    infants: Mapped[int] = mapped_column(Integer, default=0)
    special_requests: Mapped[str | None] = mapped_column(Text)

    # tentative|confirmed|checked_in|checked_out|cancelled|no_show
    reservation_status: Mapped[str] = mapped_column(String, index=True, default="tentative")
    payment_status: Mapped[str] = mapped_column(String, default="pending")

    base_rate: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    taxes: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    fees: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String, default="RON")

    confirmation_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    octorate_booking_id: Mapped[str | None] = mapped_column(String, index=True)
    octorate_push_status: Mapped[str | None] = mapped_column(String)  # pushed|confirmed|failed
    pushed_to_octorate_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    octorate_confirmation_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class ReservationStatusChange(Base):
    __tablename__ = "reservation_status_changes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("reservations.id"), index=True)
    from_status: Mapped[str] = mapped_column(String)
    to_status: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)  # admin|octorate_webhook|...
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    kind: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    reservation_id: Mapped[str | None] = mapped_column(String, index=True)

    status: Mapped[str] = mapped_column(String, index=True, default="pending")  # pending|processing|done|dead
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, index=True)
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class EmailLog(Base):
    __tablename__ = "email_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    recipient_email: Mapped[str] = mapped_column(String)
    subject: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)  # sent|failed
    message_id: Mapped[str | None] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class EmailSequenceLog(Base):
    __tablename__ = "email_sequence_logs"
    __table_args__ = (UniqueConstraint("reservation_id", "email_type", name="uq_email_sequence_reservation_type"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("reservations.id"), index=True)
    email_type: Mapped[str] = mapped_column(String)  # post_booking_followup|post_checkin
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String, index=True, default="scheduled")  # scheduled|sent|skipped|failed
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class ContactInquiry(Base):
    __tablename__ = "contact_inquiries"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, default="new")
    omd_id: Mapped[str | None] = mapped_column(ForeignKey("omds.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class BookingIssueReport(Base):
    __tablename__ = "booking_issue_reports"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("reservations.id"), index=True)
    hotel_id: Mapped[str] = mapped_column(ForeignKey("hotels.id"), index=True)
    issue_type: Mapped[str] = mapped_column(String)  # booking_error|payment_issue|room_issue|service_issue|other
    description: Mapped[str] = mapped_column(Text)
    contact_preference: Mapped[str] = mapped_column(String, default="email")  # email|phone|none
    guest_email: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class ReservationStaffRating(Base):
    __tablename__ = "reservation_staff_ratings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("reservations.id"), unique=True)
    hotel_id: Mapped[str] = mapped_column(ForeignKey("hotels.id"), index=True)
    rating: Mapped[int] = mapped_column(Integer)
    comment: Mapped[str | None] = mapped_column(Text)
    guest_email: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class DestinationRating(Base):
    __tablename__ = "destination_ratings"
    __table_args__ = (UniqueConstraint("omd_id", "email", name="uq_destination_rating_omd_email"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    omd_id: Mapped[str] = mapped_column(ForeignKey("omds.id"), index=True)
    rating: Mapped[int] = mapped_column(Integer)
    comment: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class OctorateConnection(Base):
    __tablename__ = "octorate_hotel_connections"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.id"), index=True)
    hotel_id: Mapped[str] = mapped_column(ForeignKey("hotels.id"), index=True)
    octorate_accommodation_id: Mapped[str] = mapped_column(String, index=True)

    # Fernet-encrypted, see destexplore.crypto
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OctorateRoomMapping(Base):
    __tablename__ = "octorate_room_mappings"
    __table_args__ = (
        UniqueConstraint("octorate_connection_id", "octorate_room_id", name="uq_octorate_room_mapping"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    octorate_connection_id: Mapped[str] = mapped_column(ForeignKey("octorate_hotel_connections.id"), index=True)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    octorate_room_id: Mapped[str] = mapped_column(String)
    sync_status: Mapped[str] = mapped_column(String, default="synced")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OctorateWebhookEvent(Base):
    __tablename__ = "octorate_webhook_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    octorate_connection_id: Mapped[str] = mapped_column(ForeignKey("octorate_hotel_connections.id"), index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
