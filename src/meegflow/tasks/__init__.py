"""Pre-built task implementations."""

from .face_recognition import FaceRecognition

# Lower-case task name -> Task class
task_registry = {
    "facerecognition": FaceRecognition,
}

__all__ = [
    "FaceRecognition",
    "task_registry",
]
