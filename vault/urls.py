from django.urls import path
from . import views

urlpatterns = [
    path('auth/register/', views.register, name='register'),
    path('auth/login/', views.login, name='login'),
    path('auth/logout/', views.logout, name='logout'),
    path('auth/token/refresh/', views.token_refresh, name='token_refresh'),
    path('users/me/', views.user_profile, name='user_profile'),

    path('files/upload/', views.file_upload, name='file_upload'),
    path('files/trash/', views.trash_list, name='trash_list'),
    path('files/signed/<str:token>/', views.file_signed_download, name='file_signed_download'),
    path('files/<int:file_id>/', views.file_detail, name='file_detail'),
    path('files/<int:file_id>/download/', views.file_download, name='file_download'),
    path('files/<int:file_id>/delete/', views.file_delete, name='file_delete'),
    path('files/<int:file_id>/restore/', views.file_restore, name='file_restore'),
    path('files/<int:file_id>/permanent/', views.file_permanent_delete, name='file_permanent_delete'),
    path('files/', views.file_list, name='file_list'),

    # Fixed paths must come before <partition_name>
    path('partitions/', views.partition_list, name='partition_list'),
    path('partitions/usage/', views.partition_usage, name='partition_usage'),
    path('partitions/move-files/', views.partition_move_files, name='partition_move_files'),
    path('partitions/reconcile/', views.partition_reconcile_all, name='partition_reconcile_all'),
    path('partitions/<str:partition_name>/', views.partition_detail, name='partition_detail'),
    path('partitions/<str:partition_name>/reconcile/', views.partition_reconcile, name='partition_reconcile'),
]
