from django.contrib import admin
from django.shortcuts import redirect
from django.urls import reverse
from django.utils.html import format_html

from .models import Clue, Discovery, GameSession, Hunt, Treasure


class TreasureInline(admin.TabularInline):
    model = Treasure
    extra = 1
    fields = ('ordinal', 'name', 'scan_token', 'qr_code_preview')
    readonly_fields = ('scan_token', 'qr_code_preview')

    def qr_code_preview(self, obj):
        if obj.qr_code:
            return format_html('<img src="{}" width="100" height="100" />', obj.qr_code.url)
        return "-"


class ClueInline(admin.StackedInline):
    model = Clue
    can_delete = False


class DiscoveryInline(admin.TabularInline):
    model = Discovery
    extra = 0
    can_delete = False
    readonly_fields = ('treasure', 'treasure_ordinal', 'discovered_at', 'time_taken_seconds')

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Hunt)
class HuntAdmin(admin.ModelAdmin):
    list_display = ('title', 'created_at')
    inlines = [TreasureInline]
    actions = ['download_qr_codes']

    @admin.action(description='Download QR codes (PDF)')
    def download_qr_codes(self, request, queryset):
        if queryset.count() != 1:
            self.message_user(request, "Select exactly one hunt.", level='warning')
            return None
        return redirect(reverse('game:hunt_pdf', args=[queryset.first().id]))


@admin.register(Treasure)
class TreasureAdmin(admin.ModelAdmin):
    list_display = ('ordinal', 'name', 'hunt', 'scan_token')
    list_filter = ('hunt',)
    readonly_fields = ('scan_token', 'qr_code')
    inlines = [ClueInline]


@admin.register(GameSession)
class GameSessionAdmin(admin.ModelAdmin):
    list_display = ('player_name', 'hunt', 'status', 'current_ordinal', 'total_treasures', 'started_at')
    list_filter = ('hunt', 'status')
    readonly_fields = ('current_ordinal', 'total_treasures', 'started_at', 'completed_at', 'total_time_seconds')
    inlines = [DiscoveryInline]
