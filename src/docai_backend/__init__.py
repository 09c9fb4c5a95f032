"""
DocAI Backend - REST API for document management and AI augmentation

This package provides a FastAPI-based web service where users:

- Register and sign in (email/password or Firebase identity tokens)
- Upload documents and manage their metadata
- Start background processing jobs (OCR, handwriting recognition, text
  extraction, language detection) and poll their progress
- Generate quiz questions and summaries through Google Gemini, with a
  deterministic fallback when the service is unavailable

Key Components:
    - main: Application factory, exception handlers and router wiring
    - routers: HTTP endpoints for auth, documents and AI jobs
    - job_manager: Job creation and background execution
    - job_runner: Sequential step execution with progress reporting
    - job_store / document_store / user_store: SQLite persistence
    - generation: Prompting, output parsing and fallbacks
    - configuration: Settings loading and validation

Usage:
    Run the API server with:
        uvicorn docai_backend.main:app --reload --host 0.0.0.0 --port 5000
"""
