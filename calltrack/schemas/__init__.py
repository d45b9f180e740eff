"""
schemas/ — Pydantic request/response models for the CallTrack API

Validates request bodies before any business logic runs and documents
response shapes for OpenAPI.
"""
