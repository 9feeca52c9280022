# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Security alerting for importer uploads
    SECURITY_ALERTS_ENABLED = os.environ.get("SECURITY_ALERTS_ENABLED", "true").lower() == "true"

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "Chambers LEX Importer")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class ImporterMonitoring:
    """Prometheus metric helpers for importer HTTP endpoints."""

    PROGRESS_COUNTER = Counter(
        "importer_progress_requests_total",
        "Total import progress API requests.",
        labelnames=("status",),
    )
    PROGRESS_LATENCY = Histogram(
        "importer_progress_request_seconds",
        "Latency histogram for import progress API.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )

    JOBS_LIST_COUNTER = Counter(
        "importer_jobs_list_requests_total",
        "Total import jobs list API requests.",
        labelnames=("status",),
    )
    JOBS_LIST_RESULT_SIZE = Histogram(
        "importer_jobs_list_result_size",
        "Number of jobs returned by list endpoint.",
        labelnames=("status",),
        buckets=(0, 1, 5, 10, 25, 50, 100),
    )

    EXPORT_COUNTER = Counter(
        "importer_export_requests_total",
        "Total LEX export requests.",
        labelnames=("status",),
    )
    EXPORT_LATENCY = Histogram(
        "importer_export_request_seconds",
        "Latency histogram for the LEX export endpoint.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
    )
    EXPORT_ROW_COUNT = Histogram(
        "importer_export_row_count",
        "Row count of LEX exports.",
        labelnames=("status",),
        buckets=(0, 1, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
    )

    UPLOAD_COUNTER = Counter(
        "importer_upload_requests_total",
        "Total LEX upload requests by outcome.",
        labelnames=("status",),
    )

    @classmethod
    def record_progress(cls, *, duration_seconds: float, status: str):
        cls.PROGRESS_COUNTER.labels(status=status).inc()
        cls.PROGRESS_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_jobs_list(cls, *, status: str, result_count: int):
        cls.JOBS_LIST_COUNTER.labels(status=status).inc()
        cls.JOBS_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_export(cls, *, duration_seconds: float, status: str, row_count: int):
        cls.EXPORT_COUNTER.labels(status=status).inc()
        cls.EXPORT_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.EXPORT_ROW_COUNT.labels(status=status).observe(float(max(row_count, 0)))

    @classmethod
    def record_upload(cls, *, status: str):
        cls.UPLOAD_COUNTER.labels(status=status).inc()
