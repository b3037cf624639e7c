"""
Credit Ledger - Serverless Entry Point

AWS Lambda / Vercel handler wrapping the FastAPI application. The
lifespan runs on cold start, so the database schema and the default rate
catalog are in place before the first request.
"""

from mangum import Mangum

from .server import app

handler = Mangum(app, lifespan="auto")
