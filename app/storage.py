from supabase import create_client, Client
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
import os
import logging
from urllib.parse import urlparse
from dotenv import load_dotenv

from reservation_scraper.normalize import normalize_name

load_dotenv()

logger = logging.getLogger(__name__)


class Storage:
    """
    Supabase-backed store for booking accounts and stored restaurant facts.

    Implements the account store used by the session manager
    (get_account / mark_account_invalid).
    """

    def __init__(self, client: Optional[Client] = None):
        if client is not None:
            self.client = client
            return

        supabase_url = os.getenv("SUPABASE_URL")
        supabase_key = os.getenv("SUPABASE_ANON_KEY")

        if not supabase_url or not supabase_key:
            missing = []
            if not supabase_url:
                missing.append("SUPABASE_URL")
            if not supabase_key:
                missing.append("SUPABASE_ANON_KEY")

            error_msg = (
                f"Supabase credentials not found in environment.\n"
                f"Missing variables: {', '.join(missing)}\n\n"
                f"Please set the following environment variables:\n"
                f"  - SUPABASE_URL: Your Supabase project URL\n"
                f"  - SUPABASE_ANON_KEY: Your Supabase anonymous key\n\n"
                f"Example .env file:\n"
                f"  SUPABASE_URL=https://your-project.supabase.co\n"
                f"  SUPABASE_ANON_KEY=your-anon-key-here"
            )
            raise ValueError(error_msg)

        parsed_url = urlparse(supabase_url)
        if not parsed_url.scheme or not parsed_url.netloc:
            raise ValueError(f"Invalid SUPABASE_URL format: {supabase_url}. Expected format: https://your-project.supabase.co")

        # Using positional arguments to avoid any proxy-related issues
        self.client: Client = create_client(supabase_url, supabase_key)
        logger.info("Successfully created Supabase client")

    # ========== Booking Accounts ==========

    def get_account(self, platform: str) -> Optional[Dict[str, Any]]:
        """Most recently updated valid account for a platform"""
        response = (
            self.client.table('booking_accounts')
            .select('id, platform, email, password, last_login_at')
            .eq('platform', platform)
            .eq('is_valid', True)
            .order('updated_at', desc=True)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def mark_account_invalid(self, account_id: str) -> None:
        logger.warning(f"Marking booking account {account_id} invalid")
        self.client.table('booking_accounts').update({
            'is_valid': False,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }).eq('id', account_id).execute()

    def list_accounts(self) -> List[Dict[str, Any]]:
        """Accounts without passwords"""
        response = (
            self.client.table('booking_accounts')
            .select('id, platform, email, last_login_at, is_valid, created_at, updated_at')
            .execute()
        )
        return response.data if response.data else []

    # ========== Stored Restaurant Facts ==========

    def get_restaurant_phone(self, name: str) -> Optional[str]:
        """Phone number stored for a restaurant name, if any"""
        try:
            response = (
                self.client.table('restaurants')
                .select('name, phone')
                .ilike('name', name)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to get stored phone for {name}: {str(e)}")
            return None
        if response.data and response.data[0].get('phone'):
            return response.data[0]['phone']
        return None

    def get_stored_scores(self) -> Dict[str, Dict[str, Any]]:
        """normalized name -> {tabelog_url, score} for restaurants with a stored Tabelog score"""
        try:
            response = (
                self.client.table('restaurants')
                .select('name, tabelog_url, tabelog_score')
                .not_.is_('tabelog_score', 'null')
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to get stored scores: {str(e)}")
            return {}

        scores = {}
        for row in response.data or []:
            norm = normalize_name(row.get('name'))
            if norm:
                scores[norm] = {'tabelog_url': row.get('tabelog_url'), 'score': row.get('tabelog_score')}
        return scores
