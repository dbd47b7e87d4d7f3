import logging
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from gymledger.configuration.config import Config
from gymledger.services.svc_errors import LedgerError

# Configure logger
logger = logging.getLogger("gymledger")
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
logger.addHandler(handler)
logger.setLevel(logging.INFO)

# Resource to identify this service
resource = Resource(attributes={
    SERVICE_NAME: "gymledger"
})

def setup_azure_monitor():
    """Set up tracing, exporting to Azure Monitor when a connection string is configured."""
    trace_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(trace_provider)

    if not Config.APPLICATIONINSIGHTS_CONNECTION_STRING:
        logger.info("Application Insights not configured, spans stay local")
        return trace.get_tracer(__name__)

    try:
        azure_exporter = AzureMonitorTraceExporter(
            connection_string=Config.APPLICATIONINSIGHTS_CONNECTION_STRING
        )
        trace_provider.add_span_processor(
            BatchSpanProcessor(azure_exporter)
        )
        logger.info("Azure Monitor setup completed successfully")
    except Exception as e:
        logger.error(f"Failed to set up Azure Monitor: {str(e)}")
    return trace.get_tracer(__name__)

# Initialize tracer
tracer = setup_azure_monitor()

def instrument_fastapi(app):
    """Instrument a FastAPI application for monitoring."""
    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI app instrumented successfully")
    except Exception as e:
        logger.error(f"Failed to instrument FastAPI app: {str(e)}")

def start_span(name, context=None, kind=None, attributes=None):
    """Start a new trace span with the specified name and attributes."""
    return tracer.start_as_current_span(name, context=context, kind=kind, attributes=attributes)

def _set_properties(span, properties):
    for key, value in (properties or {}).items():
        span.set_attribute(key, str(value))

def log_event(event_name, properties=None):
    """Log a custom event as a span plus a log line."""
    try:
        with tracer.start_as_current_span(event_name) as span:
            _set_properties(span, properties)
        logger.info(f"Event: {event_name}", extra={"custom_properties": properties})
    except Exception as e:
        logger.error(f"Failed to log event '{event_name}': {str(e)}")

def log_warning(event_name, properties=None):
    """Log a condition that needs operator attention but did not fail the call."""
    try:
        with tracer.start_as_current_span(event_name) as span:
            span.set_attribute("severity", "warning")
            _set_properties(span, properties)
        logger.warning(f"Warning: {event_name}", extra={"custom_properties": properties})
    except Exception as e:
        logger.error(f"Failed to log warning '{event_name}': {str(e)}")

def log_exception(exception, properties=None):
    """
    Record an exception on a span and in the log.

    Business rule rejections such as InsufficientBalance are logged as
    warnings with their error code. Anything else, StoreUnavailable
    included, is logged with its traceback.
    """
    try:
        rejected = isinstance(exception, LedgerError) and exception.status_code < 500
        with tracer.start_as_current_span("exception") as span:
            span.record_exception(exception)
            _set_properties(span, properties)
            if rejected:
                span.set_attribute("error.code", exception.code)
            else:
                span.set_status(trace.StatusCode.ERROR, str(exception))
        if rejected:
            logger.warning(f"Rejected: {exception.code}: {exception.message}",
                           extra={"custom_properties": properties})
        else:
            logger.exception(f"Exception: {str(exception)}", exc_info=exception,
                             extra={"custom_properties": properties})
    except Exception as e:
        logger.error(f"Failed to log exception: {str(e)}")

def log_metric(metric_name, value, properties=None):
    """Log a custom metric."""
    try:
        with tracer.start_as_current_span(f"metric:{metric_name}") as span:
            span.set_attribute("metric.value", value)
            _set_properties(span, properties)
        logger.info(f"Metric: {metric_name}={value}",
                   extra={"custom_properties": properties})
    except Exception as e:
        logger.error(f"Failed to log metric '{metric_name}': {str(e)}")
