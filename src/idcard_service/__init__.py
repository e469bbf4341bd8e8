"""
ID Card Request Service - REST API for student ID-card print requests

This package provides a FastAPI-based backend used by the admin portal to
move student ID-card requests through their lifecycle:

- Listing pending print requests, accepted ID cards and acceptance history
- Accepting a request (store the accepted card, remove the print request)
- Checking an admin ID against the allow-list

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - database: MongoDB store and connection readiness tracking
    - middleware: Connection gate returning 503 while the database connects
    - models: Pydantic record types for each collection
    - configuration: Config loading from defaults, YAML and environment

Usage:
    Run the API server with:
        uvicorn idcard_service.main:app --host 0.0.0.0 --port 5000

    Or use the console script, which reads HOST and PORT from configuration:
        idcard-service

    MONGO_URI must be set in the environment or in a .env file.
"""
