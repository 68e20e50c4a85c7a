from django.urls import path

from production.api import api

urlpatterns = [
    path("api/", api.urls),
]
