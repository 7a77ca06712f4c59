from django.urls import include, path

urlpatterns = [
    path("playback/", include("playback.urls")),
]
