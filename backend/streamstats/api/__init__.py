"""API router exports."""
from streamstats.api.analytics import router as analytics
