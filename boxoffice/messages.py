"""User-facing messages keyed by error code."""
from __future__ import annotations
from typing import Optional

from .errors import CheckoutError

DEFAULT_LOCALE = "fr"

MESSAGES: dict[str, dict[str, str]] = {
    "fr": {
        "checkout_failed": "Échec de la création de la commande",
        "invalid_input": "Données invalides",
        "not_authenticated": "Non authentifié",
        "payment_method_invalid": "Méthode de paiement invalide",
        "no_tickets_selected": "Aucun billet sélectionné",
        "quantity_not_integer": "La quantité de billets doit être un entier",
        "quantity_negative":
            "La quantité de billets ne peut pas être négative",
        "quantity_not_positive": "La quantité de billets doit être positive",
        "quantity_too_large": "Quantité de billets trop élevée",
        "email_required": "Email requis",
        "email_invalid": "Format d'email invalide",
        "name_required": "Nom requis",
        "event_required": "ID d'événement requis",
        "event_not_found": "Événement non trouvé",
        "event_unavailable": "Événement indisponible",
        "ticket_type_not_found": "Certains types de billets sont introuvables",
        "phone_required": "Numéro de téléphone requis",
        "token_required": "Jeton de paiement requis",
        "amount_invalid": "Montant total invalide",
        "amount_too_low": "Montant trop faible",
        "amount_too_high": "Montant trop élevé",
        "idempotency_key_required": "Clé d'idempotence requise",
        "ticket_lines_required":
            "Au moins un billet est requis pour créer un paiement",
        "inventory_wrong_event":
            "Le billet {ticket_type_id} ne correspond pas à cet événement",
        "inventory_paused":
            "Les ventes sont suspendues pour le billet {ticket_type_id}",
        "inventory_insufficient":
            "Plus assez de billets {ticket_type_id} disponibles",
        "inventory_over_limit":
            "Quantité maximale par commande dépassée pour {ticket_type_id}",
        "inventory_bad_price": "Prix de billet invalide ({ticket_type_id})",
        "payment_failed": "Échec de la création du paiement",
        "payment_in_progress": "Un paiement est déjà en cours",
        "provider_unreachable":
            "Impossible de contacter le service de paiement",
        "fx_unavailable": "Taux de change indisponible",
        "verification_failed": "Échec de la vérification du paiement",
        "payment_not_found": "Paiement introuvable",
        "guest_order_not_found": "Commande invité introuvable",
        "order_not_found": "Commande introuvable",
        "misconfigured": "Service de paiement mal configuré",
    },
    "en": {
        "checkout_failed": "Order creation failed",
        "invalid_input": "Invalid input",
        "not_authenticated": "Not authenticated",
        "payment_method_invalid": "Invalid payment method",
        "no_tickets_selected": "No tickets selected",
        "quantity_not_integer": "Ticket quantity must be an integer",
        "quantity_negative": "Ticket quantity cannot be negative",
        "quantity_not_positive": "Ticket quantity must be positive",
        "quantity_too_large": "Ticket quantity is too large",
        "email_required": "Email is required",
        "email_invalid": "Invalid email format",
        "name_required": "Name is required",
        "event_required": "Event id is required",
        "event_not_found": "Event not found",
        "event_unavailable": "Event is not available",
        "ticket_type_not_found": "Some ticket types could not be found",
        "phone_required": "Phone number is required",
        "token_required": "Payment token is required",
        "amount_invalid": "Invalid total amount",
        "amount_too_low": "Amount is too low",
        "amount_too_high": "Amount is too high",
        "idempotency_key_required": "Idempotency key is required",
        "ticket_lines_required": "At least one ticket is required",
        "inventory_wrong_event":
            "Ticket {ticket_type_id} does not belong to this event",
        "inventory_paused": "Sales are paused for ticket {ticket_type_id}",
        "inventory_insufficient":
            "Not enough {ticket_type_id} tickets available",
        "inventory_over_limit":
            "Per-order maximum exceeded for {ticket_type_id}",
        "inventory_bad_price": "Invalid ticket price ({ticket_type_id})",
        "payment_failed": "Payment creation failed",
        "payment_in_progress": "A payment is already in progress",
        "provider_unreachable": "Could not reach the payment service",
        "fx_unavailable": "Exchange rate unavailable",
        "verification_failed": "Payment verification failed",
        "payment_not_found": "Payment not found",
        "guest_order_not_found": "Guest order not found",
        "order_not_found": "Order not found",
        "misconfigured": "Payment service is misconfigured",
    },
}


def pick_locale(accept_language: Optional[str]) -> str:
    for part in (accept_language or "").split(","):
        lang = part.split(";")[0].strip().lower()[:2]
        if lang in MESSAGES:
            return lang
    return DEFAULT_LOCALE


def localize(err: CheckoutError, locale: str = DEFAULT_LOCALE) -> str:
    catalog = MESSAGES.get(locale, MESSAGES[DEFAULT_LOCALE])
    template = catalog.get(err.code)
    if template is None:
        # provider text is more specific than anything generic we have
        return err.message
    try:
        text = template.format(**err.params)
    except (KeyError, IndexError):
        text = template
    provider_message = getattr(err, "provider_message", None)
    if provider_message:
        text = f"{text}: {provider_message}"
    return text
