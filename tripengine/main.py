import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tripengine.config import settings
from tripengine.database import Base, SessionLocal, engine
from tripengine.exceptions import InvalidRecurrence
from tripengine.attendance.router import router as attendance_router
from tripengine.notifications.router import router as notifications_router
from tripengine.notifications.dispatcher import shutdown_default_dispatcher
from tripengine.notifications.websocket import websocket_endpoint
from tripengine.schedules.router import router as schedules_router
from tripengine.schedules.scheduler import WindowScheduler
from tripengine.trips.router import router as trips_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    
    scheduler = None
    if settings.WINDOW_SCHEDULER_ENABLED:
        scheduler = WindowScheduler(SessionLocal, interval_seconds=settings.WINDOW_SCHEDULER_INTERVAL_SECONDS)
        scheduler.start()
    
    yield
    
    if scheduler is not None:
        scheduler.stop()
    shutdown_default_dispatcher()

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Trip & Schedule Orchestration Engine API",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],  # Dashboard dev servers
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(RequestValidationError)
async def recurrence_validation_handler(request: Request, exc: RequestValidationError):
    """Bad recurrence bodies answer like the other schedule errors; the rest keep FastAPI's 422"""
    errors = [e for e in exc.errors() if "recurrence" in e.get("loc", ())]
    if not errors:
        return await request_validation_exception_handler(request, exc)
    error = InvalidRecurrence(
        "Recurrence must be a non-empty weekday set or a one-time date",
        details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in errors]},
    )
    return JSONResponse(status_code=error.status_code, content={"detail": error.to_detail()})

# Include routers
app.include_router(
    schedules_router,
    prefix=f"{settings.API_V1_STR}/schedules",
    tags=["Schedules"]
)

app.include_router(
    trips_router,
    prefix=f"{settings.API_V1_STR}/trips",
    tags=["Trips"]
)

app.include_router(
    attendance_router,
    prefix=f"{settings.API_V1_STR}/attendance",
    tags=["Attendance"]
)

app.include_router(
    notifications_router,
    prefix=f"{settings.API_V1_STR}/notifications",
    tags=["Notifications"]
)

@app.websocket("/ws/live")
async def live_updates(websocket: WebSocket):
    """Live trip positions and notifications"""
    await websocket_endpoint(websocket)

@app.get("/")
def root():
    """Root endpoint"""
    return {
        "message": "Trip & Schedule Orchestration Engine API",
        "version": "1.0.0",
        "docs": "/docs"
    }

@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "environment": settings.ENVIRONMENT}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("tripengine.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
