from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from datetime import datetime

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import custom modules (after .env so module-level config sees it)
from audit_service import AuditService
from ledger_core.commission_calculator import CommissionCalculator
from ledger_core.contract_document import contract_renderer
from ledger_core.ledger_store import LedgerStore
from ledger_core.settlement_engine import SettlementEngine
from ledger_core.stamping_client import EStampClient
from ledger_core.stamping_trigger import StampingTrigger
from settlement_routes import create_settlement_routes

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

# Initialize services
audit_service = AuditService(db)
ledger_store = LedgerStore(db)
commission_calculator = CommissionCalculator(ledger_store)
stamping_trigger = StampingTrigger(
    ledger_store,
    contract_renderer,
    EStampClient(),
    audit_service=audit_service
)
settlement_engine = SettlementEngine(
    client,
    db,
    stamping_trigger=stamping_trigger,
    commission_calculator=commission_calculator,
    audit_service=audit_service,
    store=ledger_store
)

# Create the main app
app = FastAPI(
    title="Investment Cooperative Settlement Engine",
    version="1.0.0",
    description="Payment settlement, investor ledger and commission posting"
)

app.include_router(create_settlement_routes(
    client, db, settlement_engine, stamping_trigger, commission_calculator
))


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "1.0.0"
    }


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def create_indexes():
    await ledger_store.ensure_indexes()
    logger.info("Settlement engine started")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
