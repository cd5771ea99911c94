from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, Time, Text, ForeignKey, Float, JSON, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from tripengine.database import Base

# ================================
# Organizations & Users
# ================================
class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    address = Column(Text)
    lat = Column(Float)
    lng = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    users = relationship("User", back_populates="organization")
    buses = relationship("Bus", back_populates="organization")
    passengers = relationship("Passenger", back_populates="organization")

    @property
    def has_depot(self) -> bool:
        return self.lat is not None and self.lng is not None

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(String(20), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    organization = relationship("Organization", back_populates="users")
    notifications = relationship("Notification", back_populates="user")

# ================================
# Fleet
# ================================
class Driver(Base):
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    license_number = Column(String(50))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    user = relationship("User")
    bus = relationship("Bus", back_populates="driver", uselist=False)

class Bus(Base):
    __tablename__ = "buses"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    bus_number = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False, default=30)
    # At most one bus per driver
    driver_id = Column(Integer, ForeignKey("drivers.id"), unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    organization = relationship("Organization", back_populates="buses")
    driver = relationship("Driver", back_populates="bus")
    passengers = relationship("Passenger", back_populates="bus")

class Passenger(Base):
    __tablename__ = "passengers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(Text)
    lat = Column(Float)
    lng = Column(Float)
    bus_id = Column(Integer, ForeignKey("buses.id"), index=True)
    route_id = Column(Integer, ForeignKey("routes.id"))
    guardian_id = Column(Integer, ForeignKey("users.id"), index=True)
    qr_token = Column(String(100), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    organization = relationship("Organization", back_populates="passengers")
    bus = relationship("Bus", back_populates="passengers")
    guardian = relationship("User")

# ================================
# Routes & Schedules
# ================================
class Route(Base):
    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    bus_id = Column(Integer, ForeignKey("buses.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    # Ordered list of stop dicts, owned by the route
    stops = Column(JSON, nullable=False, default=list)
    start_time = Column(String(5))
    end_time = Column(String(5))
    is_optimized = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    bus = relationship("Bus")

class Schedule(Base):
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=False)
    bus_id = Column(Integer, ForeignKey("buses.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False, index=True)
    boarding_time = Column(Time, nullable=False)
    return_time = Column(Time)
    # Exactly one of operating_days / one_time_date is set
    operating_days = Column(JSON, default=list)
    one_time_date = Column(Date)
    is_active = Column(Boolean, default=True, index=True)
    last_generated_date = Column(Date)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    route = relationship("Route")
    bus = relationship("Bus")
    driver = relationship("Driver")
    trips = relationship("Trip", back_populates="schedule")

    @property
    def is_recurring(self) -> bool:
        return bool(self.operating_days)

# ================================
# Trips
# ================================
class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (
        UniqueConstraint("schedule_id", "scheduled_start", name="uq_trips_schedule_start"),
        # One ONGOING trip per bus
        Index(
            "uq_trips_bus_ongoing",
            "bus_id",
            unique=True,
            sqlite_where=text("status = 'ONGOING'"),
            postgresql_where=text("status = 'ONGOING'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    bus_id = Column(Integer, ForeignKey("buses.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False, index=True)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=False)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), index=True)
    status = Column(String(20), nullable=False, default="SCHEDULED", index=True)
    scheduled_start = Column(DateTime, nullable=False, index=True)
    actual_start = Column(DateTime)
    actual_end = Column(DateTime)
    current_lat = Column(Float)
    current_lng = Column(Float)
    last_location_time = Column(DateTime)
    distance_covered = Column(Float, default=0.0)
    estimated_duration = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    bus = relationship("Bus")
    driver = relationship("Driver")
    route = relationship("Route")
    schedule = relationship("Schedule", back_populates="trips")
    attendance_records = relationship("AttendanceRecord", back_populates="trip")
    location_history = relationship("BusLocationHistory", back_populates="trip")

class BusLocationHistory(Base):
    __tablename__ = "bus_location_history"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    speed = Column(Float)
    heading = Column(Float)
    accuracy = Column(Float)
    recorded_at = Column(DateTime, nullable=False, index=True)

    # Relationships
    trip = relationship("Trip", back_populates="location_history")

# ================================
# Attendance
# ================================
class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("trip_id", "passenger_id", name="uq_attendance_trip_passenger"),
    )

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    passenger_id = Column(Integer, ForeignKey("passengers.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    boarded_at = Column(DateTime)
    boarded_lat = Column(Float)
    boarded_lng = Column(Float)
    dropped_at = Column(DateTime)
    dropped_lat = Column(Float)
    dropped_lng = Column(Float)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    trip = relationship("Trip", back_populates="attendance_records")
    passenger = relationship("Passenger")

# ================================
# Notifications
# ================================
class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(30), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(20), default='NORMAL', index=True)
    notification_metadata = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, nullable=False, index=True)
    read_at = Column(DateTime)

    # Relationships
    user = relationship("User", back_populates="notifications")
