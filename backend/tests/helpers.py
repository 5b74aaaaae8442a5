from backend.models import ScanMetadata


def metadata_for(student_id: str, **overrides) -> ScanMetadata:
    values = {"device_fingerprint": f"device-{student_id}", "ip": "10.0.0.1"}
    values.update(overrides)
    return ScanMetadata(**values)
