"""
Background removal video service package.

Exposes the segmentation-backed background removal stage, the video
composition stage, the object store gateway, the pipeline orchestrator
behind the FastAPI application, and the capture client.
"""
