from django.urls import path
from .views import (
    PlaybackSnapshotAPIView, TripStateAPIView, TogglePlayView, SetSpeedView, SelectTripView
)

app_name = "playback"

urlpatterns = [
    path("api/snapshot/", PlaybackSnapshotAPIView.as_view(), name="snapshot"),
    path("api/trips/<int:trip_id>/", TripStateAPIView.as_view(), name="trip-state"),
    path("api/toggle-play/", TogglePlayView.as_view(), name="toggle-play"),
    path("api/speed/", SetSpeedView.as_view(), name="set-speed"),
    path("api/select-trip/", SelectTripView.as_view(), name="select-trip"),
]
