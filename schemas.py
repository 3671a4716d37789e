"""
Request bodies for the safety-path API.

Persisted documents (MongoDB collections):
- protector               guardian links with the embedded SOS share
- emergency_contacts      per-user contact book
- security_lights, cctv_installations, safe_return_paths (emergency bells),
  women_safe_return_paths safety features, read-only
- auth_users, auth_sessions  hosted auth provider, read-only
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class LatLng(BaseModel):
    lat: float
    lng: float


class RouteWeights(BaseModel):
    cctv: Optional[float] = None
    crime: Optional[float] = Field(None, description="multiplier for SERVICE roads (back alleys)")
    light: Optional[float] = None
    roadSafety: Optional[float] = Field(None, description="PRIMARY roads are multiplied by 1/roadSafety")


class RouteRequest(BaseModel):
    start: LatLng
    end: LatLng
    weights: Optional[RouteWeights] = None


class GuardianCreate(BaseModel):
    email: Optional[str] = None
    relation: Optional[str] = None
    priority: Optional[float] = None


class GuardianUpdate(BaseModel):
    id: Optional[str] = None
    action: Optional[Literal["respond", "revoke"]] = None
    decision: Optional[Literal["accept", "decline"]] = None


class SOSTrigger(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None


class EmergencyContactBody(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1)
    relation: Optional[str] = None
