import threading
from contextlib import asynccontextmanager
from fastapi import FastAPI
from gymledger.configuration.config import Config
from gymledger.configuration.monitor import instrument_fastapi, log_event
from gymledger.dependencies.dep_services import get_consistency_sync
from gymledger.routers import rou_booking, rou_class, rou_member, rou_membership, rou_payment

@asynccontextmanager
async def lifespan(app: FastAPI):
    # The consistency sync only runs against a configured store
    stop_event = threading.Event()
    worker = None
    if Config.COSMOSDB_ENDPOINT and Config.SYNC_INTERVAL_SECONDS > 0:
        worker = threading.Thread(
            target=get_consistency_sync().run,
            args=(stop_event,),
            name="consistency-sync",
            daemon=True
        )
        worker.start()
    yield
    stop_event.set()
    if worker is not None:
        worker.join(timeout=Config.STORE_TIMEOUT_SECONDS)
        log_event("Application shutdown complete")

app = FastAPI(
    title="GymLedger API",
    description="Session credits and class bookings for the gym",
    version="1.0.0",
    lifespan=lifespan
)

# Include all routers
app.include_router(rou_member.router)
app.include_router(rou_class.router)
app.include_router(rou_booking.router)
app.include_router(rou_membership.router)
app.include_router(rou_payment.router)

# Instrument app with Azure Monitor
instrument_fastapi(app)

if __name__ == '__main__':
    import uvicorn
    uvicorn.run(app, host='0.0.0.0', port=8000)
