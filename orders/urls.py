from django.urls import path
from . import views
app_name = "orders"
urlpatterns = [
    path("<int:order_id>/status", views.order_status_view, name="status"),
]
