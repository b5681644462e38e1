"""Supabase client construction. One client per browser session under Streamlit."""
import os

import streamlit as st
from dotenv import load_dotenv
from supabase import create_client, Client

from medspg.database import DatabaseClient

load_dotenv()


def _env_client() -> Client:
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
    return create_client(url, key)


def get_supabase() -> Client:
    """Client bound to the current Streamlit session, so auth state is not shared between users."""
    if "supabase_client" not in st.session_state:
        st.session_state["supabase_client"] = _env_client()
    return st.session_state["supabase_client"]


def get_supabase_uncached() -> Client:
    """For CLI/scripts (no Streamlit context)."""
    return _env_client()


def get_database() -> DatabaseClient:
    return DatabaseClient(get_supabase())
