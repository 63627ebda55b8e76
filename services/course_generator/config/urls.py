from django.contrib import admin
from django.urls import path

from generator.views import generate_course, healthz

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/healthz", healthz),
    path("api/generate-course", generate_course),
]
