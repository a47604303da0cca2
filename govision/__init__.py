"""GoVision client: upload images, track inference jobs, render detections."""

__version__ = "1.0.0"
