from django.urls import path

from tasking.api import api

urlpatterns = [
    path("api/", api.urls),
]
