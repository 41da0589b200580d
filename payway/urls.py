from django.urls import path
from . import views
app_name = "payway"
urlpatterns = [
    path("create-payment", views.create_payment_view, name="create_payment"),
    # Pushback URL registered with PayWay as return_url
    path("callback", views.callback_view, name="callback"),
    path("check-status", views.check_status_view, name="check_status"),
]
