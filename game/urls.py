from django.urls import path
from . import views

app_name = 'game'

urlpatterns = [
    path('api/game/hunts/<int:hunt_id>/start', views.start_game, name='start_game'),
    path('api/game/hunts/<int:hunt_id>/stats', views.game_stats, name='game_stats'),
    path('api/game/sessions/<int:session_id>', views.session_detail, name='session_detail'),
    path('api/game/sessions/<int:session_id>/scan', views.scan_code, name='scan_code'),
    path('api/game/sessions/<int:session_id>/abandon', views.abandon_game, name='abandon_game'),
    path('hunt/<int:hunt_id>/pdf/', views.hunt_qr_pdf, name='hunt_pdf'),
]
