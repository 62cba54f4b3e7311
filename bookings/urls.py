from django.urls import path
from . import views

urlpatterns = [
    path('', views.create_booking, name='create_booking'),
    path('<uuid:booking_id>/', views.get_booking, name='get_booking'),
    path('<uuid:booking_id>/approve/', views.approve_booking, name='approve_booking'),
    path('<uuid:booking_id>/cancel/', views.cancel_booking, name='cancel_booking'),
    path('<uuid:booking_id>/complete/', views.complete_booking, name='complete_booking'),
    path('<uuid:booking_id>/start/', views.start_booking, name='start_booking'),
    path('<uuid:booking_id>/dispute/', views.dispute_booking, name='dispute_booking'),
    path('<uuid:booking_id>/status/', views.update_booking_status, name='update_booking_status'),
]
